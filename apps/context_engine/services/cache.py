"""Tenant-safe search result cache.

Keys are derived from tenant + normalized query + search parameters. Two
backends: in-process LRU (default) and the Postgres search_cache table. The
cache is an optimization only; backend errors are logged and read as misses.
"""

import copy
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

import sqlalchemy.exc
from sqlalchemy import delete, func, select

from apps.context_engine.db import Database
from apps.context_engine.errors import StoreUnavailable
from apps.context_engine.models.base import as_utc, utcnow
from apps.context_engine.models.search_cache import SearchCacheEntry
from apps.context_engine.repositories.tenant_filters import select_search_cache_for_tenant, tenant_where
from apps.context_engine.schemas.content import ContentType, parse_content_type
from apps.context_engine.services.tenant_guard import require_tenant_id
from apps.context_engine.services.text import compute_query_hash, normalize_query

logger = logging.getLogger(__name__)


def make_cache_key(
    tenant_id: str,
    query: str,
    content_type: "ContentType | str | None",
    top_n: int,
    min_score: float,
) -> str:
    """Build cache key. Exactly: search:tenant:query_hash:TYPE|ALL:topN:minS."""
    tenant_id = require_tenant_id(tenant_id)
    ct = parse_content_type(content_type, allow_all=True)
    query_hash = compute_query_hash(normalize_query(query))
    return f"search:{tenant_id}:{query_hash}:{ct.value if ct else 'ALL'}:top{int(top_n)}:min{float(min_score)}"


class CacheBackend(Protocol):
    def get(self, key: str, tenant_id: str | None) -> dict[str, Any] | None: ...

    def set(self, key: str, tenant_id: str, payload: dict[str, Any], ttl_seconds: int) -> int:
        """Store payload; return the number of entries evicted to make room."""
        ...

    def size(self) -> int: ...

    def invalidate_tenant(self, tenant_id: str) -> int: ...

    def clear(self) -> None: ...

    def is_available(self) -> bool: ...


class MemoryCacheBackend:
    """OrderedDict LRU with per-entry expiry. Thread-safe."""

    def __init__(self, max_size: int = 1000, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()
        self._data: "OrderedDict[str, tuple[str, float | None, dict[str, Any]]]" = OrderedDict()

    def get(self, key: str, tenant_id: str | None) -> dict[str, Any] | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            owner, expires, payload = item
            if tenant_id is not None and owner != tenant_id:
                return None
            if expires is not None and expires <= self._clock():
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return copy.deepcopy(payload)

    def set(self, key: str, tenant_id: str, payload: dict[str, Any], ttl_seconds: int) -> int:
        expires = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        evicted = 0
        with self._lock:
            if key in self._data:
                del self._data[key]
            self._data[key] = (tenant_id, expires, copy.deepcopy(payload))
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)
                evicted += 1
        return evicted

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def invalidate_tenant(self, tenant_id: str) -> int:
        with self._lock:
            keys = [k for k, (owner, _, _) in self._data.items() if owner == tenant_id]
            for k in keys:
                del self._data[k]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def is_available(self) -> bool:
        return True


class DatabaseCacheBackend:
    """search_cache table. Tenant column is checked on every read."""

    def __init__(self, db: Database, max_size: int = 1000) -> None:
        self.db = db
        self.max_size = max_size

    def get(self, key: str, tenant_id: str | None) -> dict[str, Any] | None:
        stmt = select(SearchCacheEntry).where(SearchCacheEntry.cache_key == key)
        if tenant_id is not None:
            stmt = stmt.where(tenant_where(SearchCacheEntry, tenant_id))
        try:
            with self.db.session() as session:
                row = session.scalars(stmt).first()
                if not row:
                    return None
                now = utcnow()
                if row.expires_at and as_utc(row.expires_at) <= now:
                    session.delete(row)
                    return None
                row.last_accessed_at = now
                return json.loads(row.payload_json)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"cache read failed: {e}") from e

    def set(self, key: str, tenant_id: str, payload: dict[str, Any], ttl_seconds: int) -> int:
        payload_json = json.dumps(payload, ensure_ascii=False)
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None
        try:
            with self.db.session() as session:
                row = session.get(SearchCacheEntry, key)
                if row is not None and row.tenant_id != tenant_id:
                    # Keys embed the tenant, so this only happens on a corrupted row.
                    session.delete(row)
                    session.flush()
                    row = None
                if row:
                    row.payload_json = payload_json
                    row.expires_at = expires_at
                    row.last_accessed_at = now
                else:
                    session.add(
                        SearchCacheEntry(
                            cache_key=key,
                            tenant_id=tenant_id,
                            payload_json=payload_json,
                            created_at=now,
                            last_accessed_at=now,
                            expires_at=expires_at,
                        )
                    )
                session.flush()
                return self._evict(session)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"cache write failed: {e}") from e

    def _evict(self, session) -> int:
        total = session.execute(select(func.count()).select_from(SearchCacheEntry)).scalar_one()
        excess = int(total) - self.max_size
        if excess <= 0:
            return 0
        oldest = (
            select(SearchCacheEntry.cache_key)
            .order_by(SearchCacheEntry.last_accessed_at.asc(), SearchCacheEntry.cache_key.asc())
            .limit(excess)
        )
        keys = list(session.execute(oldest).scalars())
        session.execute(delete(SearchCacheEntry).where(SearchCacheEntry.cache_key.in_(keys)))
        return len(keys)

    def size(self) -> int:
        try:
            with self.db.session() as session:
                return int(session.execute(select(func.count()).select_from(SearchCacheEntry)).scalar_one())
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"cache size failed: {e}") from e

    def invalidate_tenant(self, tenant_id: str) -> int:
        try:
            with self.db.session() as session:
                keys = list(
                    session.execute(
                        select_search_cache_for_tenant(tenant_id).with_only_columns(SearchCacheEntry.cache_key)
                    ).scalars()
                )
                if keys:
                    session.execute(delete(SearchCacheEntry).where(SearchCacheEntry.cache_key.in_(keys)))
                return len(keys)
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"cache invalidate failed: {e}") from e

    def clear(self) -> None:
        try:
            with self.db.session() as session:
                session.execute(delete(SearchCacheEntry))
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"cache clear failed: {e}") from e

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired rows. Cron only."""
        now = now or utcnow()
        try:
            with self.db.session() as session:
                return session.execute(
                    delete(SearchCacheEntry).where(
                        SearchCacheEntry.expires_at.is_not(None),
                        SearchCacheEntry.expires_at <= now,
                    )
                ).rowcount or 0
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"cache purge failed: {e}") from e

    def is_available(self) -> bool:
        return self.db.ping()


class CacheManager:
    """Key derivation, hit/miss/eviction accounting and fail-open access to a backend."""

    def __init__(self, backend: CacheBackend, *, ttl_seconds: int = 300, max_size: int = 1000) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    make_key = staticmethod(make_cache_key)

    def get(self, key: str, tenant_id: str | None = None) -> dict[str, Any] | None:
        """Cached envelope (a private copy) or None. Backend errors count as misses."""
        try:
            value = self.backend.get(key, tenant_id)
        except StoreUnavailable as e:
            logger.warning("cache get failed key=%s: %s", key, e)
            value = None
        with self._lock:
            if value is None:
                self._misses += 1
            else:
                self._hits += 1
        return value

    def set(self, key: str, envelope: dict[str, Any], tenant_id: str) -> bool:
        tenant_id = require_tenant_id(tenant_id)
        try:
            evicted = self.backend.set(key, tenant_id, envelope, self.ttl_seconds)
        except StoreUnavailable as e:
            logger.warning("cache set failed key=%s: %s", key, e)
            return False
        if evicted:
            with self._lock:
                self._evictions += evicted
        return True

    def stats(self) -> dict[str, Any]:
        try:
            size = self.backend.size()
        except StoreUnavailable as e:
            logger.warning("cache size failed: %s", e)
            size = 0
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": size,
                "hitRate": round(self._hits / lookups, 4) if lookups else 0.0,
                "evictions": self._evictions,
                "maxSize": self.max_size,
                "ttlSeconds": self.ttl_seconds,
            }

    def is_available(self) -> bool:
        try:
            return self.backend.is_available()
        except StoreUnavailable:
            return False

    def invalidate_tenant(self, tenant_id: str) -> int:
        tenant_id = require_tenant_id(tenant_id)
        n = self.backend.invalidate_tenant(tenant_id)
        logger.info("cache invalidated tenant=%s entries=%s", tenant_id, n)
        return n

    def clear(self) -> None:
        self.backend.clear()
        with self._lock:
            self._hits = self._misses = self._evictions = 0

    def validate_config(self) -> list[str]:
        """Human-readable problems with the cache settings; empty when valid."""
        errors = []
        if not 1 <= self.ttl_seconds <= 3600:
            errors.append("Cache TTL must be between 1 second and 1 hour")
        if not 1 <= self.max_size <= 10000:
            errors.append("Cache max size must be between 1 and 10000")
        return errors
