#!/usr/bin/env python3
"""Usage alerts: evaluate per-tenant usage thresholds, insert usage_alert rows on breach.

Run as `python -m cron.usage_alerts`. For each tenant in TENANTS, over the trailing
USAGE_ALERT_PERIOD (default day):
  - error_rate if success rate < USAGE_ALERT_MIN_SUCCESS_RATE
  - high_usage if any hour exceeds USAGE_ALERT_HIGH_TOKENS_PER_HOUR tokens
  - cost_threshold if estimated cost per day > USAGE_ALERT_COST_PER_DAY

Event spam control: an alert type is not inserted again within EVENT_COOLDOWN_HOURS.
"""

import sys

from apps.context_engine.errors import ContextEngineError
from apps.context_engine.services.usage import UsageTracker
from cron.config import config
from cron.db import get_database
from cron.logging import get_logger

logger = get_logger("usage_alerts")


def _run_tenant(tracker: UsageTracker, tenant_id: str) -> int:
    """Process one tenant. Returns count of alerts inserted."""
    inserted = tracker.check_alerts(
        tenant_id,
        cooldown_hours=config.EVENT_COOLDOWN_HOURS,
        period=config.ALERT_PERIOD,
    )
    for alert in inserted:
        logger.info(
            "tenant=%s %s severity=%s value=%.4f threshold=%.4f",
            tenant_id, alert["alert_type"], alert["severity"], alert["current_value"], alert["threshold"],
        )
    return len(inserted)


def main() -> int:
    tenants = config.TENANTS
    if not tenants:
        logger.warning("TENANTS env empty, nothing to run")
        return 0

    settings = config.settings()
    db = get_database()
    tracker = UsageTracker(
        db,
        cost_per_1k_tokens=settings.cost_per_1k_tokens,
        min_success_rate=settings.alert_min_success_rate,
        high_tokens_per_hour=settings.alert_high_tokens_per_hour,
        cost_per_day=settings.alert_cost_per_day,
    )
    logger.info("usage_alerts start tenants=%s", tenants)
    total = 0
    try:
        for tenant_id in tenants:
            try:
                total += _run_tenant(tracker, tenant_id)
            except ContextEngineError as e:
                logger.exception("tenant=%s error: %s", tenant_id, e.message)
                return 1
    finally:
        db.dispose()

    logger.info("usage_alerts done inserted=%s", total)
    return 0


if __name__ == "__main__":
    sys.exit(main())
