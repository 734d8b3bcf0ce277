"""Response schemas for API endpoints. Contract-frozen: extra fields forbidden."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Response(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class ContextResult(_Response):
    """A single ranked piece of tenant content."""

    id: str
    content_type: str
    content_id: str
    content: str
    similarity: float
    confidence: float
    score: float
    text_snippet: str
    metadata: dict[str, Any] | None = None
    updated_at: str | None = None


class RetrievalData(_Response):
    """Result envelope. This is what the cache stores."""

    query: str
    content_type: str
    results: list[ContextResult] = Field(default_factory=list)
    total: int = 0
    average_confidence: float = 0.0
    retrieval_time: int = 0  # ms spent embedding + searching, excludes cache
    response_time: int = 0  # ms for this call
    cached: bool = False
    breakdown: dict[str, int] | None = None


class ErrorInfo(_Response):
    code: str
    message: str


class RetrievalResponse(_Response):
    """{success, data} or {success: false, error: {code, message}}."""

    success: bool
    data: RetrievalData | None = None
    error: ErrorInfo | None = None


class IndexingJobView(_Response):
    job_id: str
    batch_id: str | None = None
    tenant_id: str
    operation: str
    content_type: str
    content_id: str
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None


class JobAccepted(_Response):
    job_id: str
    status: str = "pending"


class BatchAccepted(_Response):
    batch_id: str
    job_ids: list[str]


class BatchStatus(_Response):
    batch_id: str
    status: str
    total: int
    pending: int
    processing: int
    completed: int
    failed: int


class RetryResult(_Response):
    retried: int
