"""Tenant-scoped SQL helpers. All tenant-scoped queries MUST use these.

Provides:
  - tenant_where(model, tenant_id): binary expression for WHERE model.tenant_id == tenant_id
  - select_*_for_tenant(tenant_id): SQLAlchemy Select with tenant filter applied
"""

from sqlalchemy import BinaryExpression, Select, select

from apps.context_engine.models.embedding_record import EmbeddingRecord
from apps.context_engine.models.search_cache import SearchCacheEntry
from apps.context_engine.models.usage_alert import UsageAlert
from apps.context_engine.models.usage_metric import UsageMetric


def tenant_where(model: type, tenant_id: str) -> BinaryExpression[bool]:
    """Return WHERE clause: model.tenant_id == tenant_id. Use for filters and joins."""
    col = getattr(model, "tenant_id", None)
    if col is None:
        raise ValueError(f"Model {model.__name__} has no tenant_id column")
    return col == tenant_id


def select_embedding_record_for_tenant(tenant_id: str) -> Select[tuple[EmbeddingRecord]]:
    """Select from embedding_record with tenant filter. Add .where() for further filters."""
    return select(EmbeddingRecord).where(tenant_where(EmbeddingRecord, tenant_id))


def select_active_embedding_record_for_tenant(tenant_id: str) -> Select[tuple[EmbeddingRecord]]:
    """Same as select_embedding_record_for_tenant, soft-deleted rows excluded."""
    return select_embedding_record_for_tenant(tenant_id).where(EmbeddingRecord.deleted_at.is_(None))


def select_search_cache_for_tenant(tenant_id: str) -> Select[tuple[SearchCacheEntry]]:
    """Select from search_cache with tenant filter."""
    return select(SearchCacheEntry).where(tenant_where(SearchCacheEntry, tenant_id))


def select_usage_metric_for_tenant(tenant_id: str) -> Select[tuple[UsageMetric]]:
    """Select from usage_metric with tenant filter."""
    return select(UsageMetric).where(tenant_where(UsageMetric, tenant_id))


def select_usage_alert_for_tenant(tenant_id: str) -> Select[tuple[UsageAlert]]:
    """Select from usage_alert with tenant filter."""
    return select(UsageAlert).where(tenant_where(UsageAlert, tenant_id))
