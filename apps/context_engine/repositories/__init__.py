"""Repository layer: tenant-scoped queries and helpers."""

from apps.context_engine.repositories.tenant_filters import (
    select_active_embedding_record_for_tenant,
    select_embedding_record_for_tenant,
    select_search_cache_for_tenant,
    select_usage_alert_for_tenant,
    select_usage_metric_for_tenant,
    tenant_where,
)

__all__ = [
    "tenant_where",
    "select_embedding_record_for_tenant",
    "select_active_embedding_record_for_tenant",
    "select_search_cache_for_tenant",
    "select_usage_metric_for_tenant",
    "select_usage_alert_for_tenant",
]
