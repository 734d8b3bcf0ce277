"""SQLAlchemy models. All tables include tenant_id; queries MUST filter by tenant_id."""

from apps.context_engine.models.base import Base
from apps.context_engine.models.embedding_record import EmbeddingRecord
from apps.context_engine.models.search_cache import SearchCacheEntry
from apps.context_engine.models.usage_alert import UsageAlert
from apps.context_engine.models.usage_metric import UsageMetric

__all__ = [
    "Base",
    "EmbeddingRecord",
    "SearchCacheEntry",
    "UsageAlert",
    "UsageMetric",
]
