"""Vector store: tenant-scoped embedding records with soft delete.

RULE: every method calls require_tenant_id before any DB access and filters by
tenant through repositories.tenant_filters. One active row per
(tenant_id, content_type, content_id), enforced by uq_embedding_record_active_key.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy.exc
from sqlalchemy import delete, func, select, update

from apps.context_engine.db import Database
from apps.context_engine.errors import NotFoundError, StoreUnavailable, ValidationError, VectorDimensionMismatch
from apps.context_engine.models.base import as_utc, utcnow
from apps.context_engine.models.embedding_record import EmbeddingRecord
from apps.context_engine.repositories.tenant_filters import (
    select_active_embedding_record_for_tenant,
    select_embedding_record_for_tenant,
)
from apps.context_engine.schemas.content import ContentType, parse_content_type
from apps.context_engine.services.tenant_guard import require_tenant_id

logger = logging.getLogger(__name__)


@dataclass
class StoredEmbedding:
    """Detached copy of an embedding_record row."""

    id: int
    tenant_id: str
    content_type: str
    content_id: str
    content: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @classmethod
    def from_row(cls, row: EmbeddingRecord) -> "StoredEmbedding":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            content_type=row.content_type,
            content_id=row.content_id,
            content=row.content,
            vector=[float(x) for x in row.vector],
            metadata=dict(row.metadata_json or {}),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            deleted_at=as_utc(row.deleted_at),
        )


def _type_value(content_type: "ContentType | str") -> str:
    return parse_content_type(content_type).value


class VectorStore:
    """Persistent per-tenant collection of embedding records."""

    def __init__(self, db: Database, *, dimension: int) -> None:
        self.db = db
        self.dimension = dimension

    def _check_vector(self, vector: list[float]) -> list[float]:
        if len(vector) != self.dimension:
            raise VectorDimensionMismatch(self.dimension, len(vector))
        return [float(x) for x in vector]

    def upsert(
        self,
        tenant_id: str,
        content_type: "ContentType | str",
        content_id: str,
        text: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> StoredEmbedding:
        """Insert or fully replace the active record for the key. Bumps updated_at."""
        tenant_id = require_tenant_id(tenant_id)
        ct = _type_value(content_type)
        if not content_id or not str(content_id).strip():
            raise ValidationError("content_id is required")
        content_id = str(content_id).strip()
        vector = self._check_vector(vector)
        now = utcnow()
        stmt = select_active_embedding_record_for_tenant(tenant_id).where(
            EmbeddingRecord.content_type == ct,
            EmbeddingRecord.content_id == content_id,
        )
        try:
            with self.db.session() as session:
                row = session.execute(stmt.with_for_update()).scalar_one_or_none()
                if row is None:
                    row = EmbeddingRecord(
                        tenant_id=tenant_id,
                        content_type=ct,
                        content_id=content_id,
                        created_at=now,
                    )
                    session.add(row)
                row.content = text
                row.vector = vector
                row.metadata_json = dict(metadata or {})
                row.updated_at = now
                session.flush()
                result = StoredEmbedding.from_row(row)
        except sqlalchemy.exc.IntegrityError as e:
            # Concurrent insert for the same key won the race; replace it instead.
            logger.warning("upsert race tenant=%s %s/%s; retrying as update", tenant_id, ct, content_id)
            return self._replace_existing(tenant_id, ct, content_id, text, vector, metadata, e)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store upsert failed: {e}") from e
        logger.debug("upsert tenant=%s %s/%s id=%s", tenant_id, ct, content_id, result.id)
        return result

    def _replace_existing(
        self,
        tenant_id: str,
        ct: str,
        content_id: str,
        text: str,
        vector: list[float],
        metadata: dict[str, Any] | None,
        cause: Exception,
    ) -> StoredEmbedding:
        stmt = select_active_embedding_record_for_tenant(tenant_id).where(
            EmbeddingRecord.content_type == ct,
            EmbeddingRecord.content_id == content_id,
        )
        try:
            with self.db.session() as session:
                row = session.execute(stmt).scalar_one_or_none()
                if row is None:
                    raise StoreUnavailable(f"vector store upsert failed: {cause}") from cause
                row.content = text
                row.vector = vector
                row.metadata_json = dict(metadata or {})
                row.updated_at = utcnow()
                session.flush()
                return StoredEmbedding.from_row(row)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store upsert failed: {e}") from e

    def get(
        self,
        tenant_id: str,
        content_type: "ContentType | str",
        content_id: str,
        *,
        include_deleted: bool = False,
    ) -> StoredEmbedding:
        """Active record for the key. Raises NotFoundError when absent (or owned by another tenant)."""
        tenant_id = require_tenant_id(tenant_id)
        ct = _type_value(content_type)
        base = (
            select_embedding_record_for_tenant(tenant_id)
            if include_deleted
            else select_active_embedding_record_for_tenant(tenant_id)
        )
        stmt = (
            base.where(EmbeddingRecord.content_type == ct, EmbeddingRecord.content_id == str(content_id))
            .order_by(EmbeddingRecord.updated_at.desc(), EmbeddingRecord.id.desc())
            .limit(1)
        )
        try:
            with self.db.session() as session:
                row = session.execute(stmt).scalar_one_or_none()
                if row is None:
                    raise NotFoundError(
                        f"no embedding for {ct}/{content_id}",
                        details={"content_type": ct, "content_id": str(content_id)},
                    )
                return StoredEmbedding.from_row(row)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store get failed: {e}") from e

    def list_active(
        self,
        tenant_id: str,
        content_type: "ContentType | str | None" = None,
        *,
        include_deleted: bool = False,
        chunk_size: int = 500,
    ) -> Iterator[StoredEmbedding]:
        """Lazily stream the tenant's records, optionally filtered by content type."""
        tenant_id = require_tenant_id(tenant_id)
        ct = parse_content_type(content_type, allow_all=True)
        stmt = (
            select_embedding_record_for_tenant(tenant_id)
            if include_deleted
            else select_active_embedding_record_for_tenant(tenant_id)
        )
        if ct is not None:
            stmt = stmt.where(EmbeddingRecord.content_type == ct.value)
        stmt = stmt.order_by(EmbeddingRecord.id).execution_options(yield_per=chunk_size)
        return self._stream(stmt)

    def _stream(self, stmt) -> Iterator[StoredEmbedding]:
        try:
            with self.db.session() as session:
                for row in session.execute(stmt).scalars():
                    yield StoredEmbedding.from_row(row)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store list failed: {e}") from e

    def soft_delete(self, tenant_id: str, content_type: "ContentType | str", content_id: str) -> bool:
        """Mark the active record deleted. Returns False if there was none (no-op)."""
        tenant_id = require_tenant_id(tenant_id)
        ct = _type_value(content_type)
        stmt = (
            update(EmbeddingRecord)
            .where(
                EmbeddingRecord.tenant_id == tenant_id,
                EmbeddingRecord.content_type == ct,
                EmbeddingRecord.content_id == str(content_id),
                EmbeddingRecord.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow())
        )
        try:
            with self.db.session() as session:
                n = session.execute(stmt).rowcount
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store delete failed: {e}") from e
        logger.debug("soft_delete tenant=%s %s/%s rows=%s", tenant_id, ct, content_id, n)
        return bool(n)

    def count(self, tenant_id: str, content_type: "ContentType | str | None" = None) -> int:
        """Active records for the tenant (optionally one content type)."""
        tenant_id = require_tenant_id(tenant_id)
        ct = parse_content_type(content_type, allow_all=True)
        stmt = select(func.count()).select_from(EmbeddingRecord).where(
            EmbeddingRecord.tenant_id == tenant_id,
            EmbeddingRecord.deleted_at.is_(None),
        )
        if ct is not None:
            stmt = stmt.where(EmbeddingRecord.content_type == ct.value)
        try:
            with self.db.session() as session:
                return int(session.execute(stmt).scalar_one())
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store count failed: {e}") from e

    def count_by_content_type(self, tenant_id: str) -> dict[str, int]:
        tenant_id = require_tenant_id(tenant_id)
        stmt = (
            select(EmbeddingRecord.content_type, func.count())
            .where(EmbeddingRecord.tenant_id == tenant_id, EmbeddingRecord.deleted_at.is_(None))
            .group_by(EmbeddingRecord.content_type)
        )
        try:
            with self.db.session() as session:
                counts = {ct: int(n) for ct, n in session.execute(stmt).all()}
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store count failed: {e}") from e
        return {t.value: counts.get(t.value, 0) for t in ContentType}

    def nearest(
        self,
        tenant_id: str,
        query_vector: list[float],
        content_type: "ContentType | str | None" = None,
        *,
        limit: int = 50,
    ) -> list[StoredEmbedding]:
        """Approximate candidates ordered by pgvector cosine distance (HNSW). Postgres only."""
        tenant_id = require_tenant_id(tenant_id)
        if not self.db.is_postgres:
            raise StoreUnavailable("nearest() requires the pgvector backend")
        query_vector = self._check_vector(query_vector)
        ct = parse_content_type(content_type, allow_all=True)
        stmt = select_active_embedding_record_for_tenant(tenant_id)
        if ct is not None:
            stmt = stmt.where(EmbeddingRecord.content_type == ct.value)
        stmt = stmt.order_by(EmbeddingRecord.vector.cosine_distance(query_vector)).limit(limit)
        try:
            with self.db.session() as session:
                return [StoredEmbedding.from_row(r) for r in session.execute(stmt).scalars()]
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store nearest failed: {e}") from e

    def purge_deleted(self, older_than_days: int = 30) -> int:
        """Hard-delete soft-deleted records past retention. Cross-tenant; cron only."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        stmt = delete(EmbeddingRecord).where(
            EmbeddingRecord.deleted_at.is_not(None),
            EmbeddingRecord.deleted_at < cutoff,
        )
        try:
            with self.db.session() as session:
                n = session.execute(stmt).rowcount or 0
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"vector store purge failed: {e}") from e
        logger.info("purge_deleted cutoff=%s rows=%s", cutoff.isoformat(), n)
        return n
