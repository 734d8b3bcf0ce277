"""Error taxonomy. Lower layers raise these; the retriever and the indexing
service translate anything else into one of them before it crosses a boundary."""

from typing import Any

INVALID_REQUEST = "INVALID_REQUEST"
UNAUTHORIZED = "UNAUTHORIZED"
SEARCH_FAILED = "SEARCH_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"
NOT_FOUND = "NOT_FOUND"
CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
EMBEDDING_GENERATION_FAILED = "EMBEDDING_GENERATION_FAILED"


class ContextEngineError(Exception):
    """Base error. `code` is the wire-level error code."""

    code = INTERNAL_ERROR

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(ContextEngineError, ValueError):
    """Bad input. No side effects happened; never retried."""

    code = INVALID_REQUEST


class TenantRequiredError(ValidationError):
    """Raised when tenant_id is None or empty."""


class AdmissionDeniedError(ValidationError):
    """Tenant is over its configured usage limits."""


class UpstreamFailure(ContextEngineError):
    """Embedding provider or store failed."""

    code = SEARCH_FAILED


class TransientEmbeddingError(UpstreamFailure):
    """Rate limit, timeout or 5xx from the provider. Safe to retry."""


class EmbeddingGenerationFailed(UpstreamFailure):
    """Provider call failed for good (retries exhausted or non-retryable)."""

    code = EMBEDDING_GENERATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.attempts = attempts


class StoreUnavailable(UpstreamFailure):
    """Persistent store raised; wraps the driver error."""


class ConfigurationError(ContextEngineError):
    """Fatal misconfiguration. Not retried."""

    code = CONFIGURATION_ERROR


class VectorDimensionMismatch(ConfigurationError):
    """Two vectors (or a vector and the configured model) disagree on length."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"vector dimension mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class NotFoundError(ContextEngineError):
    """Referenced record does not exist for this tenant."""

    code = NOT_FOUND
