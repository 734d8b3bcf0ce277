"""usage_metric model. Append-only cost record per embedding/search operation."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from apps.context_engine.models.base import Base, JSONType, utcnow

OPERATIONS = ("embedding_generation", "embedding_search", "indexing_job", "batch_processing")


class UsageMetric(Base):
    """One row per provider call, search or job outcome. Never updated."""

    __tablename__ = "usage_metric"
    __table_args__ = (
        Index("ix_usage_metric_tenant_created", "tenant_id", "created_at"),
        Index("ix_usage_metric_created", "created_at"),
        CheckConstraint(
            "operation IN ('embedding_generation', 'embedding_search', 'indexing_job', 'batch_processing')",
            name="ck_usage_metric_operation",
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    api_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    details_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
