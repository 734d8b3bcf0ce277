"""Usage tracker: append-only cost records per embedding/search/job, reports and alerts.

Recording never raises into the caller; a failed insert is logged and dropped.
Reports are derived from raw rows and never mutate them.
"""

import csv
import io
import json
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy.exc
from sqlalchemy import delete, func, select

from apps.context_engine.db import Database
from apps.context_engine.errors import StoreUnavailable, ValidationError
from apps.context_engine.models.base import as_utc, utcnow
from apps.context_engine.models.usage_alert import UsageAlert
from apps.context_engine.models.usage_metric import OPERATIONS, UsageMetric
from apps.context_engine.repositories.tenant_filters import (
    select_usage_alert_for_tenant,
    select_usage_metric_for_tenant,
)
from apps.context_engine.services.tenant_guard import require_tenant_id

logger = logging.getLogger(__name__)

PERIODS: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}

ALERT_TYPES = ("high_usage", "error_rate", "cost_threshold")

EXPORT_FORMATS = ("json", "csv")
EXPORT_COLUMNS = (
    "created_at",
    "operation",
    "content_type",
    "token_count",
    "api_calls",
    "processing_time_ms",
    "success",
    "error_code",
    "cost",
)


def _period(period: str) -> timedelta:
    try:
        return PERIODS[period]
    except KeyError:
        raise ValidationError(f"invalid period {period!r}; must be one of {', '.join(PERIODS)}") from None


def _bucket(ts: datetime, period: str) -> str:
    ts = as_utc(ts)
    if period in ("hour", "day"):
        return ts.strftime("%Y-%m-%dT%H:00Z")
    return ts.strftime("%Y-%m-%d")


def _growth(current: float, previous: float) -> float:
    """Percent change vs previous period. 100.0 when starting from zero."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100.0, 2)


class UsageTracker:
    """Records usage metrics and derives reports, alerts and admission decisions."""

    def __init__(
        self,
        db: Database,
        *,
        cost_per_1k_tokens: float = 0.0001,
        min_success_rate: float = 0.90,
        high_tokens_per_hour: int = 10000,
        cost_per_day: float = 100.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.cost_per_1k_tokens = cost_per_1k_tokens
        self.min_success_rate = min_success_rate
        self.high_tokens_per_hour = high_tokens_per_hour
        self.cost_per_day = cost_per_day
        self._clock = clock

    # -- recording ------------------------------------------------------

    def record_usage(
        self,
        tenant_id: str,
        operation: str,
        *,
        content_type: str | None = None,
        token_count: int = 0,
        api_calls: int = 0,
        processing_time_ms: int = 0,
        success: bool = True,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Append one usage record. Returns False (and logs) instead of raising."""
        if operation not in OPERATIONS:
            logger.error("record_usage unknown operation=%s tenant=%s", operation, tenant_id)
            return False
        try:
            tenant_id = require_tenant_id(tenant_id)
            with self.db.session() as session:
                session.add(
                    UsageMetric(
                        tenant_id=tenant_id,
                        operation=operation,
                        content_type=content_type,
                        token_count=max(0, int(token_count)),
                        api_calls=max(0, int(api_calls)),
                        processing_time_ms=max(0, int(processing_time_ms)),
                        success=bool(success),
                        error_code=error_code,
                        details_json=details,
                        created_at=self._clock(),
                    )
                )
            return True
        except (sqlalchemy.exc.SQLAlchemyError, ValidationError) as e:
            logger.error("record_usage failed tenant=%s operation=%s: %s", tenant_id, operation, e)
            return False

    def estimate_cost(self, token_count: int) -> float:
        return round(token_count / 1000.0 * self.cost_per_1k_tokens, 6)

    # -- queries --------------------------------------------------------

    def _metrics(self, tenant_id: str | None, start: datetime, end: datetime) -> list[UsageMetric]:
        if tenant_id is None:
            stmt = select(UsageMetric)
        else:
            stmt = select_usage_metric_for_tenant(tenant_id)
        stmt = stmt.where(UsageMetric.created_at >= start, UsageMetric.created_at <= end).order_by(
            UsageMetric.created_at
        )
        try:
            with self.db.session() as session:
                return list(session.execute(stmt).scalars().all())
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"usage query failed: {e}") from e

    def _summary(self, rows: Iterable[UsageMetric]) -> dict[str, Any]:
        rows = list(rows)
        tokens = sum(r.token_count for r in rows)
        calls = sum(r.api_calls for r in rows)
        ok = sum(1 for r in rows if r.success)
        return {
            "total_operations": len(rows),
            "total_tokens": tokens,
            "total_api_calls": calls,
            "total_cost": self.estimate_cost(tokens),
            "success_rate": round(ok / len(rows), 4) if rows else 1.0,
            "average_response_time": round(sum(r.processing_time_ms for r in rows) / len(rows), 2) if rows else 0.0,
        }

    @staticmethod
    def _group(rows: Iterable[UsageMetric], key: Callable[[UsageMetric], str]) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = defaultdict(lambda: {"operations": 0, "tokens": 0, "api_calls": 0, "failures": 0})
        for r in rows:
            g = out[key(r)]
            g["operations"] += 1
            g["tokens"] += r.token_count
            g["api_calls"] += r.api_calls
            if not r.success:
                g["failures"] += 1
        return dict(out)

    def get_usage_stats(self, tenant_id: str, period: str = "day") -> dict[str, Any]:
        """Summary plus per-operation breakdown for the trailing period."""
        tenant_id = require_tenant_id(tenant_id)
        end = self._clock()
        rows = self._metrics(tenant_id, end - _period(period), end)
        return {
            "tenant_id": tenant_id,
            "period": period,
            **self._summary(rows),
            "by_operation": self._group(rows, lambda r: r.operation),
        }

    def get_current_usage(self, tenant_id: str, window_minutes: int = 60) -> dict[str, int]:
        tenant_id = require_tenant_id(tenant_id)
        end = self._clock()
        rows = self._metrics(tenant_id, end - timedelta(minutes=window_minutes), end)
        return {
            "tokens": sum(r.token_count for r in rows),
            "api_calls": sum(r.api_calls for r in rows),
            "operations": len(rows),
        }

    def is_within_rate_limit(self, tenant_id: str, max_tokens_per_hour: int = 0, max_calls_per_hour: int = 0) -> bool:
        """Admission check over the last hour. A limit of 0 means unlimited."""
        if max_tokens_per_hour <= 0 and max_calls_per_hour <= 0:
            return True
        current = self.get_current_usage(tenant_id, 60)
        if max_tokens_per_hour > 0 and current["tokens"] >= max_tokens_per_hour:
            return False
        if max_calls_per_hour > 0 and current["api_calls"] >= max_calls_per_hour:
            return False
        return True

    # -- reports --------------------------------------------------------

    def _evaluate(self, rows: list[UsageMetric], span: timedelta) -> list[dict[str, Any]]:
        """Threshold breaches over rows. Pure; nothing is persisted."""
        alerts: list[dict[str, Any]] = []
        if not rows:
            return alerts
        summary = self._summary(rows)

        rate = summary["success_rate"]
        if rate < self.min_success_rate:
            severity = "critical" if rate < 0.5 else "high" if rate < 0.75 else "medium"
            alerts.append({
                "alert_type": "error_rate",
                "severity": severity,
                "message": f"Success rate {rate:.1%} is below {self.min_success_rate:.0%}",
                "threshold": self.min_success_rate,
                "current_value": rate,
            })

        per_hour: dict[str, int] = defaultdict(int)
        for r in rows:
            per_hour[_bucket(r.created_at, "hour")] += r.token_count
        peak = max(per_hour.values())
        if peak > self.high_tokens_per_hour:
            alerts.append({
                "alert_type": "high_usage",
                "severity": "high" if peak > 2 * self.high_tokens_per_hour else "medium",
                "message": f"Token usage peaked at {peak} tokens/hour (limit {self.high_tokens_per_hour})",
                "threshold": float(self.high_tokens_per_hour),
                "current_value": float(peak),
            })

        days = max(span / timedelta(days=1), 1.0)
        cost_per_day = summary["total_cost"] / days
        if cost_per_day > self.cost_per_day:
            alerts.append({
                "alert_type": "cost_threshold",
                "severity": "critical" if cost_per_day > 2 * self.cost_per_day else "high",
                "message": f"Estimated cost ${cost_per_day:.2f}/day exceeds ${self.cost_per_day:.2f}/day",
                "threshold": self.cost_per_day,
                "current_value": round(cost_per_day, 6),
            })
        return alerts

    def generate_usage_report(self, tenant_id: str, period: str = "day") -> dict[str, Any]:
        """{summary, breakdown, trends, alerts} for the trailing period vs the one before it."""
        tenant_id = require_tenant_id(tenant_id)
        span = _period(period)
        end = self._clock()
        start = end - span
        rows = self._metrics(tenant_id, start, end)
        previous = self._metrics(tenant_id, start - span, start)

        summary = self._summary(rows)
        prev_summary = self._summary(previous)
        return {
            "tenant_id": tenant_id,
            "period": period,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "summary": summary,
            "breakdown": {
                "by_operation": self._group(rows, lambda r: r.operation),
                "by_content_type": self._group(rows, lambda r: r.content_type or "NONE"),
                "by_bucket": self._group(rows, lambda r: _bucket(r.created_at, period)),
            },
            "trends": {
                "token_growth": _growth(summary["total_tokens"], prev_summary["total_tokens"]),
                "cost_growth": _growth(summary["total_cost"], prev_summary["total_cost"]),
                "usage_growth": _growth(summary["total_operations"], prev_summary["total_operations"]),
            },
            "alerts": self._evaluate(rows, span),
        }

    def export_usage_data(self, tenant_id: str, start: datetime, end: datetime, fmt: str = "json") -> str:
        """Raw usage rows in [start, end] as a JSON array or CSV text, oldest first."""
        tenant_id = require_tenant_id(tenant_id)
        fmt = (fmt or "").strip().lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"format must be one of {', '.join(EXPORT_FORMATS)}, got {fmt!r}")
        start, end = as_utc(start), as_utc(end)
        if start > end:
            raise ValidationError("start must not be after end")
        rows = [
            {
                "created_at": as_utc(r.created_at).isoformat(),
                "operation": r.operation,
                "content_type": r.content_type or "",
                "token_count": r.token_count,
                "api_calls": r.api_calls,
                "processing_time_ms": r.processing_time_ms,
                "success": r.success,
                "error_code": r.error_code or "",
                "cost": self.estimate_cost(r.token_count),
            }
            for r in self._metrics(tenant_id, start, end)
        ]
        logger.info("usage export tenant=%s format=%s rows=%s", tenant_id, fmt, len(rows))
        if fmt == "json":
            return json.dumps(rows, indent=2)
        out = io.StringIO()
        writer = csv.DictWriter(out, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)
        return out.getvalue()

    # -- alerts ---------------------------------------------------------

    def record_alert(
        self,
        tenant_id: str,
        alert_type: str,
        severity: str,
        message: str,
        threshold: float,
        current_value: float,
        details: dict[str, Any] | None = None,
    ) -> int:
        tenant_id = require_tenant_id(tenant_id)
        if alert_type not in ALERT_TYPES:
            raise ValidationError(f"invalid alert_type {alert_type!r}")
        try:
            with self.db.session() as session:
                alert = UsageAlert(
                    tenant_id=tenant_id,
                    alert_type=alert_type,
                    severity=severity,
                    message=message,
                    threshold=float(threshold),
                    current_value=float(current_value),
                    details_json=details,
                    created_at=self._clock(),
                )
                session.add(alert)
                session.flush()
                return alert.id
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"record_alert failed: {e}") from e

    def get_alerts(
        self,
        tenant_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Alerts newest first. tenant_id=None reads across tenants (admin/cron only)."""
        stmt = select(UsageAlert) if tenant_id is None else select_usage_alert_for_tenant(require_tenant_id(tenant_id))
        if start is not None:
            stmt = stmt.where(UsageAlert.created_at >= start)
        if end is not None:
            stmt = stmt.where(UsageAlert.created_at < end)
        stmt = stmt.order_by(UsageAlert.created_at.desc(), UsageAlert.id.desc()).limit(limit)
        try:
            with self.db.session() as session:
                alerts = session.execute(stmt).scalars().all()
                return [
                    {
                        "id": a.id,
                        "tenant_id": a.tenant_id,
                        "alert_type": a.alert_type,
                        "severity": a.severity,
                        "message": a.message,
                        "threshold": a.threshold,
                        "current_value": a.current_value,
                        "details": a.details_json or {},
                        "created_at": as_utc(a.created_at).isoformat(),
                    }
                    for a in alerts
                ]
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"alert query failed: {e}") from e

    def check_alerts(self, tenant_id: str, *, cooldown_hours: int = 24, period: str = "day") -> list[dict[str, Any]]:
        """Evaluate thresholds over the trailing period and persist new alerts.

        An alert type already raised for the tenant within cooldown_hours is not
        inserted again. Returns the alerts that were inserted.
        """
        tenant_id = require_tenant_id(tenant_id)
        span = _period(period)
        now = self._clock()
        breaches = self._evaluate(self._metrics(tenant_id, now - span, now), span)
        if not breaches:
            return []
        recent = {a["alert_type"] for a in self.get_alerts(tenant_id, start=now - timedelta(hours=cooldown_hours))}
        inserted: list[dict[str, Any]] = []
        for b in breaches:
            if b["alert_type"] in recent:
                logger.debug("tenant=%s alert=%s within cooldown", tenant_id, b["alert_type"])
                continue
            alert_id = self.record_alert(
                tenant_id,
                b["alert_type"],
                b["severity"],
                b["message"],
                b["threshold"],
                b["current_value"],
                details={"period": period},
            )
            inserted.append({"id": alert_id, **b})
            logger.info("tenant=%s alert=%s severity=%s", tenant_id, b["alert_type"], b["severity"])
        return inserted

    # -- admin / maintenance --------------------------------------------

    def get_admin_dashboard_metrics(
        self,
        *,
        queue_size: Callable[[], int] | None = None,
        top: int = 10,
    ) -> dict[str, Any]:
        """Cross-tenant aggregate over the last 24 hours."""
        end = self._clock()
        rows = self._metrics(None, end - timedelta(days=1), end)
        summary = self._summary(rows)
        by_tenant = self._group(rows, lambda r: r.tenant_id)
        top_tenants = sorted(
            ({"tenant_id": t, **g, "cost": self.estimate_cost(g["tokens"])} for t, g in by_tenant.items()),
            key=lambda g: (-g["tokens"], g["tenant_id"]),
        )[:top]
        return {
            "overview": {"total_tenants": len(by_tenant), **summary},
            "top_tenants": top_tenants,
            "recent_alerts": self.get_alerts(None, start=end - timedelta(days=1), limit=20),
            "system_health": {
                "database": self.db.ping(),
                "queue_size": queue_size() if queue_size else 0,
                "error_rate": round(1.0 - summary["success_rate"], 4),
            },
        }

    def cleanup_old_data(self, older_than_days: int = 90) -> dict[str, int]:
        """Hard-delete usage metrics and alerts older than the retention window."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        try:
            with self.db.session() as session:
                metrics = session.execute(delete(UsageMetric).where(UsageMetric.created_at < cutoff)).rowcount
                alerts = session.execute(delete(UsageAlert).where(UsageAlert.created_at < cutoff)).rowcount
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"usage cleanup failed: {e}") from e
        logger.info("usage cleanup cutoff=%s metrics=%s alerts=%s", cutoff.isoformat(), metrics, alerts)
        return {"metrics": metrics or 0, "alerts": alerts or 0}

    def count_records(self, tenant_id: str, operation: str | None = None, success: bool | None = None) -> int:
        tenant_id = require_tenant_id(tenant_id)
        stmt = select(func.count()).select_from(UsageMetric).where(UsageMetric.tenant_id == tenant_id)
        if operation is not None:
            stmt = stmt.where(UsageMetric.operation == operation)
        if success is not None:
            stmt = stmt.where(UsageMetric.success == success)
        try:
            with self.db.session() as session:
                return int(session.execute(stmt).scalar_one())
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise StoreUnavailable(f"usage count failed: {e}") from e
