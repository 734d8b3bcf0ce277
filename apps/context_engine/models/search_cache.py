"""search_cache model. Tenant-scoped search result cache (database cache backend)."""

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from apps.context_engine.models.base import Base, utcnow


class SearchCacheEntry(Base):
    """Cached result envelope per cache key."""

    __tablename__ = "search_cache"
    __table_args__ = (
        Index("ix_search_cache_tenant_id", "tenant_id"),
        Index("ix_search_cache_expires_at", "expires_at"),
        Index("ix_search_cache_last_accessed", "last_accessed_at"),
    )

    cache_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
