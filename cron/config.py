"""Cron config from environment. Same variables the API reads."""

import os

from apps.context_engine.config import DEFAULT_DATABASE_URL, Settings, _int, _list


class Config:
    """Cron-only knobs plus the shared Settings for component wiring."""

    DATABASE_URL: str = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    TENANTS: list[str] = _list(os.getenv("TENANTS"))
    EVENT_COOLDOWN_HOURS: int = _int(os.getenv("EVENT_COOLDOWN_HOURS"), 24)
    ALERT_PERIOD: str = (os.getenv("USAGE_ALERT_PERIOD") or "day").strip().lower()
    EMBEDDING_RETENTION_DAYS: int = _int(os.getenv("EMBEDDING_RETENTION_DAYS"), 30)
    USAGE_RETENTION_DAYS: int = _int(os.getenv("USAGE_RETENTION_DAYS"), 90)
    LOG_DIR: str = os.getenv("CRON_LOG_DIR", "logs")

    def settings(self) -> Settings:
        return Settings.from_env()


config = Config()
