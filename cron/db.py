"""Cron DB handle. One Database per script run, schema ensured on open."""

from apps.context_engine.db import Database
from cron.config import config


def get_database(url: str | None = None) -> Database:
    """Open the store the API uses and make sure tables exist."""
    db = Database(url or config.DATABASE_URL)
    db.ensure_tables()
    return db
