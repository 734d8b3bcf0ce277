"""usage_alert model. Tenant-scoped threshold breaches (high usage, error rate, cost)."""

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from apps.context_engine.models.base import Base, JSONType, utcnow


class UsageAlert(Base):
    """Alert event: high_usage, error_rate, cost_threshold."""

    __tablename__ = "usage_alert"
    __table_args__ = (
        Index("ix_usage_alert_tenant_created", "tenant_id", "created_at"),
        CheckConstraint(
            "alert_type IN ('high_usage', 'error_rate', 'cost_threshold')",
            name="ck_usage_alert_type",
        ),
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_usage_alert_severity",
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    current_value: Mapped[float] = mapped_column(Float, nullable=False)
    details_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
