"""
Embedding generator: text -> vector through an EmbeddingProvider.

Validates and truncates input, splits batches, retries transient provider
failures with exponential backoff and records one usage row per provider call.
"""

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from apps.context_engine.errors import (
    ConfigurationError,
    ContextEngineError,
    EmbeddingGenerationFailed,
    TransientEmbeddingError,
    ValidationError,
    VectorDimensionMismatch,
)
from apps.context_engine.services.embedding_provider import EmbeddingProvider
from apps.context_engine.services.text import clean_text, estimate_tokens, truncate_to_token_limit
from apps.context_engine.services.usage import UsageTracker

logger = logging.getLogger(__name__)


class EmbeddingGenerator:
    """Wraps a provider with batching, token limits and retry/backoff."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        usage: UsageTracker | None = None,
        *,
        max_tokens: int = 8000,
        batch_size: int = 10,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.usage = usage
        self.max_tokens = max_tokens
        self.batch_size = max(1, batch_size)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def prepare(self, text: str) -> str:
        """Clean and truncate. Raises ValidationError on empty text."""
        if text is None or not str(text).strip():
            raise ValidationError("text must be non-empty")
        return truncate_to_token_limit(clean_text(str(text)), self.max_tokens)

    def embed(
        self,
        text: str,
        *,
        tenant_id: str,
        content_type: str | None = None,
    ) -> list[float]:
        return self.embed_batch([text], tenant_id=tenant_id, content_type=content_type)[0]

    def embed_batch(
        self,
        texts: Sequence[str],
        *,
        tenant_id: str,
        content_type: str | None = None,
    ) -> list[list[float]]:
        """Embed texts preserving order. Inputs beyond batch_size are split across calls.

        All-or-nothing: if any chunk fails for good, EmbeddingGenerationFailed is raised
        and no vectors are returned.
        """
        if not texts:
            return []
        prepared = [self.prepare(t) for t in texts]
        out: list[list[float]] = []
        for i in range(0, len(prepared), self.batch_size):
            chunk = prepared[i : i + self.batch_size]
            out.extend(self._embed_with_retry(chunk, tenant_id=tenant_id, content_type=content_type))
        return out

    def _embed_with_retry(
        self,
        chunk: list[str],
        *,
        tenant_id: str,
        content_type: str | None,
    ) -> list[list[float]]:
        tokens = sum(estimate_tokens(t) for t in chunk)
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            start = time.perf_counter()
            try:
                vectors = self.provider.embed(chunk)
                self._check(vectors, len(chunk))
            except TransientEmbeddingError as e:
                last_error = e
                self._record(tenant_id, content_type, tokens, start, success=False, error=e, attempt=attempt)
                if attempt < self.max_attempts:
                    delay = self.retry_delay * 2 ** (attempt - 1)
                    logger.warning(
                        "embedding attempt=%s/%s failed tenant=%s: %s; retrying in %.2fs",
                        attempt, self.max_attempts, tenant_id, e, delay,
                    )
                    self._sleep(delay)
                continue
            except ConfigurationError as e:
                self._record(tenant_id, content_type, tokens, start, success=False, error=e, attempt=attempt)
                raise
            except ContextEngineError as e:
                self._record(tenant_id, content_type, tokens, start, success=False, error=e, attempt=attempt)
                raise EmbeddingGenerationFailed(e.message, attempts=attempt, details=e.details) from e
            except Exception as e:
                self._record(tenant_id, content_type, tokens, start, success=False, error=e, attempt=attempt)
                logger.exception("embedding provider raised tenant=%s", tenant_id)
                raise EmbeddingGenerationFailed(f"embedding provider error: {e}", attempts=attempt) from e
            self._record(tenant_id, content_type, tokens, start, success=True, attempt=attempt)
            return vectors

        logger.error("embedding failed after %s attempts tenant=%s: %s", self.max_attempts, tenant_id, last_error)
        raise EmbeddingGenerationFailed(
            f"embedding generation failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    def _check(self, vectors: list[list[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise EmbeddingGenerationFailed(f"provider returned {len(vectors)} vectors for {expected} inputs")
        for v in vectors:
            if len(v) != self.dimension:
                raise VectorDimensionMismatch(self.dimension, len(v))

    def _record(
        self,
        tenant_id: str,
        content_type: str | None,
        tokens: int,
        start: float,
        *,
        success: bool,
        attempt: int,
        error: Exception | None = None,
    ) -> None:
        if self.usage is None:
            return
        details: dict[str, Any] = {"attempt": attempt, "model": self.provider.model_name}
        if error is not None:
            details["error"] = str(error)[:500]
        self.usage.record_usage(
            tenant_id,
            "embedding_generation",
            content_type=content_type,
            token_count=tokens,
            api_calls=1,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
            success=success,
            error_code=getattr(error, "code", type(error).__name__) if error is not None else None,
            details=details,
        )

    def validate_configuration(self, *, tenant_id: str = "system") -> dict[str, Any]:
        """Embed a probe string; report whether the provider works with this dimension."""
        try:
            self.embed("test", tenant_id=tenant_id)
            return {"valid": True, "error": None, "model": self.provider.model_name, "dimension": self.dimension}
        except ContextEngineError as e:
            return {"valid": False, "error": e.message, "model": self.provider.model_name, "dimension": self.dimension}
