"""Cron package: shared helpers for scheduled jobs."""

from cron.config import config
from cron.db import get_database
from cron.logging import get_logger

__all__ = ["config", "get_database", "get_logger"]
