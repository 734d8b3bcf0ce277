#!/usr/bin/env python3
"""Nightly retention cleanup. Run as `python -m cron.cleanup_nightly`.

- Hard-delete embedding records soft-deleted more than EMBEDDING_RETENTION_DAYS ago.
- Delete usage metrics and alerts older than USAGE_RETENTION_DAYS.
- Delete expired rows from the search_cache table (database cache backend).

Cross-tenant: retention applies to every tenant alike.
"""

import sys
from typing import Any

from apps.context_engine.db import Database
from apps.context_engine.errors import ContextEngineError
from apps.context_engine.services.cache import DatabaseCacheBackend
from apps.context_engine.services.usage import UsageTracker
from apps.context_engine.services.vector_store import VectorStore
from cron.config import config
from cron.db import get_database
from cron.logging import get_logger

logger = get_logger("cleanup_nightly")


def run_cleanup(db: Database, *, embedding_days: int, usage_days: int, dimension: int) -> dict[str, Any]:
    """Run every retention step against db. Returns row counts per step."""
    store = VectorStore(db, dimension=dimension)
    usage = UsageTracker(db)
    cache = DatabaseCacheBackend(db)

    embeddings = store.purge_deleted(embedding_days)
    usage_rows = usage.cleanup_old_data(usage_days)
    cache_rows = cache.purge_expired()
    return {
        "embeddings": embeddings,
        "usage_metrics": usage_rows["metrics"],
        "usage_alerts": usage_rows["alerts"],
        "cache_entries": cache_rows,
    }


def main() -> int:
    settings = config.settings()
    logger.info(
        "cleanup_nightly start embedding_days=%s usage_days=%s",
        config.EMBEDDING_RETENTION_DAYS, config.USAGE_RETENTION_DAYS,
    )
    db = get_database()
    try:
        counts = run_cleanup(
            db,
            embedding_days=config.EMBEDDING_RETENTION_DAYS,
            usage_days=config.USAGE_RETENTION_DAYS,
            dimension=settings.embedding_dim,
        )
    except ContextEngineError as e:
        logger.error("cleanup_nightly failed: %s", e.message)
        return 1
    finally:
        db.dispose()
    logger.info("cleanup_nightly done %s", " ".join(f"{k}={v}" for k, v in counts.items()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
