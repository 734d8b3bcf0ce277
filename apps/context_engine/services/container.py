"""Wires components together from Settings. One Container per process (or per test)."""

import logging
from dataclasses import dataclass

from apps.context_engine.config import Settings
from apps.context_engine.db import Database
from apps.context_engine.services.cache import CacheManager, DatabaseCacheBackend, MemoryCacheBackend
from apps.context_engine.services.embedding_generator import EmbeddingGenerator
from apps.context_engine.services.embedding_provider import EmbeddingProvider, create_embedding_provider
from apps.context_engine.services.indexing import IndexingService
from apps.context_engine.services.retrieve import ContextRetriever
from apps.context_engine.services.similarity import SimilaritySearchEngine
from apps.context_engine.services.usage import UsageTracker
from apps.context_engine.services.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    db: Database
    usage: UsageTracker
    generator: EmbeddingGenerator
    store: VectorStore
    engine: SimilaritySearchEngine
    cache: CacheManager
    retriever: ContextRetriever
    indexing: IndexingService

    def start(self, *, workers: int | None = None) -> None:
        self.db.ensure_tables()
        self.indexing.start(workers if workers is not None else self.settings.workers)

    def shutdown(self) -> None:
        self.indexing.stop()
        self.db.dispose()


def build_container(
    settings: Settings,
    *,
    db: Database | None = None,
    provider: EmbeddingProvider | None = None,
    sleep=None,
) -> Container:
    """Build every component from settings. db/provider/sleep may be injected (tests)."""
    db = db or Database(settings.database_url, echo=settings.sql_echo)
    provider = provider or create_embedding_provider(settings)
    usage = UsageTracker(
        db,
        cost_per_1k_tokens=settings.cost_per_1k_tokens,
        min_success_rate=settings.alert_min_success_rate,
        high_tokens_per_hour=settings.alert_high_tokens_per_hour,
        cost_per_day=settings.alert_cost_per_day,
    )
    gen_kwargs = {"sleep": sleep} if sleep is not None else {}
    generator = EmbeddingGenerator(
        provider,
        usage,
        max_tokens=settings.embedding_max_tokens,
        batch_size=settings.embedding_batch_size,
        max_attempts=settings.embedding_retry_attempts,
        retry_delay=settings.retry_delay_seconds,
        **gen_kwargs,
    )
    store = VectorStore(db, dimension=settings.embedding_dim)
    engine = SimilaritySearchEngine(store, ann_index_threshold=settings.ann_index_threshold)
    if settings.cache_provider == "database":
        backend = DatabaseCacheBackend(db, max_size=settings.cache_max_size)
    else:
        backend = MemoryCacheBackend(max_size=settings.cache_max_size)
    cache = CacheManager(backend, ttl_seconds=settings.cache_ttl_seconds, max_size=settings.cache_max_size)
    for problem in cache.validate_config():
        logger.warning("cache config: %s", problem)
    retriever = ContextRetriever(
        generator,
        engine,
        cache,
        usage,
        default_top_n=settings.search_top_n,
        structured_min_score=settings.search_min_score,
        document_min_score=settings.document_min_score,
    )
    # Jobs retry on their own schedule, so each job attempt makes exactly one provider call
    index_generator = EmbeddingGenerator(
        provider,
        usage,
        max_tokens=settings.embedding_max_tokens,
        batch_size=settings.embedding_batch_size,
        max_attempts=1,
        **gen_kwargs,
    )
    indexing = IndexingService(
        index_generator,
        store,
        usage,
        max_attempts=settings.embedding_retry_attempts,
        retry_delay=settings.retry_delay_seconds,
        poll_seconds=settings.queue_poll_seconds,
        rate_limit_tokens_per_hour=settings.rate_limit_tokens_per_hour,
        rate_limit_calls_per_hour=settings.rate_limit_calls_per_hour,
        sleep=sleep,
    )
    logger.info(
        "container built db=%s provider=%s cache=%s",
        db.dialect, provider.model_name, settings.cache_provider,
    )
    return Container(
        settings=settings,
        db=db,
        usage=usage,
        generator=generator,
        store=store,
        engine=engine,
        cache=cache,
        retriever=retriever,
        indexing=indexing,
    )
