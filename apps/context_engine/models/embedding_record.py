"""embedding_record model. One active row per (tenant_id, content_type, content_id)."""

import os
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, BigInteger, CheckConstraint, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from apps.context_engine.config import DEFAULT_EMBEDDING_DIM, _int
from apps.context_engine.models.base import Base, JSONType, utcnow

# Fixed per deployment; must match the embedding model
EMBEDDING_DIM = _int(os.getenv("EMBEDDING_DIM"), DEFAULT_EMBEDDING_DIM)

CONTENT_TYPES = ("MENU", "POLICY", "FAQ", "BUSINESS")

_ACTIVE = text("deleted_at IS NULL")


class EmbeddingRecord(Base):
    """Embedding for one piece of tenant content. Soft-deleted via deleted_at."""

    __tablename__ = "embedding_record"
    __table_args__ = (
        Index(
            "uq_embedding_record_active_key",
            "tenant_id",
            "content_type",
            "content_id",
            unique=True,
            postgresql_where=_ACTIVE,
            sqlite_where=_ACTIVE,
        ),
        Index("ix_embedding_record_tenant_type", "tenant_id", "content_type"),
        Index("ix_embedding_record_deleted_at", "deleted_at"),
        Index(
            "ix_embedding_record_vector_hnsw",
            "vector",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"vector": "vector_cosine_ops"},
        ).ddl_if(dialect="postgresql"),
        CheckConstraint(
            "content_type IN ('MENU', 'POLICY', 'FAQ', 'BUSINESS')",
            name="ck_embedding_record_content_type",
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content_id: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    vector: Mapped[list[float]] = mapped_column(
        Vector(EMBEDDING_DIM).with_variant(JSON(), "sqlite"),
        nullable=False,
    )
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
