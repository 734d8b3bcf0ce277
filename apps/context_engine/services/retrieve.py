"""Context retrieval: validate -> cache lookup -> embed query -> search -> assemble -> cache.

Tenant from auth only; client-provided tenant_id is never used. Zero cross-tenant
results. Never raises: every outcome is a RetrievalResponse envelope.
"""

import logging
import math
import time
from collections.abc import Callable

from apps.context_engine.errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    SEARCH_FAILED,
    ConfigurationError,
    UpstreamFailure,
    ValidationError,
)
from apps.context_engine.schemas.content import (
    ALL_CONTENT_TYPES,
    STRUCTURED_CONTENT_TYPES,
    ContentType,
    parse_content_type,
)
from apps.context_engine.schemas.responses import ContextResult, ErrorInfo, RetrievalData, RetrievalResponse
from apps.context_engine.services.cache import CacheManager
from apps.context_engine.services.embedding_generator import EmbeddingGenerator
from apps.context_engine.services.similarity import SearchHit, SimilaritySearchEngine, hit_sort_key
from apps.context_engine.services.tenant_guard import require_tenant_id
from apps.context_engine.services.text import estimate_tokens, make_snippet
from apps.context_engine.services.usage import UsageTracker

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 1000
MAX_TOP_N = 20
SNIPPET_MAX = 240


class RetrievalTimeout(UpstreamFailure):
    """Embedding + search took longer than the caller's deadline."""


def _fail(code: str, message: str) -> RetrievalResponse:
    return RetrievalResponse(success=False, error=ErrorInfo(code=code, message=message))


class ContextRetriever:
    """Orchestrates the search path for one tenant request."""

    def __init__(
        self,
        generator: EmbeddingGenerator,
        engine: SimilaritySearchEngine,
        cache: CacheManager,
        usage: UsageTracker | None = None,
        *,
        default_top_n: int = 5,
        structured_min_score: float = 0.75,
        document_min_score: float = 0.65,
        max_context_length: int = SNIPPET_MAX,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.generator = generator
        self.engine = engine
        self.cache = cache
        self.usage = usage
        self.default_top_n = default_top_n
        self.structured_min_score = structured_min_score
        self.document_min_score = document_min_score
        self.max_context_length = max_context_length
        self._timer = timer

    def default_min_score(self, content_type: ContentType | None) -> float:
        """BUSINESS (document) content uses the lower RAG threshold."""
        if content_type is not None and content_type not in STRUCTURED_CONTENT_TYPES:
            return self.document_min_score
        return self.structured_min_score

    # -- public -------------------------------------------------------------

    def retrieve_context(
        self,
        tenant_id: str,
        query: str,
        *,
        content_type: "ContentType | str",
        top_n: int | None = None,
        min_score: float | None = None,
        include_metadata: bool = True,
        timeout_ms: int | None = None,
    ) -> RetrievalResponse:
        """Search one content type."""
        try:
            ct = parse_content_type(content_type)
        except ValidationError as e:
            return _fail(INVALID_REQUEST, e.message)
        return self._retrieve(tenant_id, query, ct, top_n, min_score, include_metadata, timeout_ms)

    def retrieve_all_context(
        self,
        tenant_id: str,
        query: str,
        *,
        top_n: int | None = None,
        min_score: float | None = None,
        include_metadata: bool = True,
        timeout_ms: int | None = None,
    ) -> RetrievalResponse:
        """Search every content type with one query embedding; merged by score, with per-type breakdown."""
        return self._retrieve(tenant_id, query, None, top_n, min_score, include_metadata, timeout_ms)

    def get_retrieval_stats(self, tenant_id: str) -> dict:
        tenant_id = require_tenant_id(tenant_id)
        return {**self.engine.search_stats(tenant_id), "cache": self.cache.stats()}

    # -- pipeline -----------------------------------------------------------

    def _validate(
        self,
        tenant_id: str,
        query: str,
        content_type: ContentType | None,
        top_n: int | None,
        min_score: float | None,
    ) -> tuple[str, str, int, float]:
        tenant_id = require_tenant_id(tenant_id)
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query is required")
        query = query.strip()
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError(f"query must be at most {MAX_QUERY_LENGTH} characters")
        if top_n is None:
            top_n = self.default_top_n
        if isinstance(top_n, bool) or not isinstance(top_n, int) or not 1 <= top_n <= MAX_TOP_N:
            raise ValidationError(f"topN must be an integer between 1 and {MAX_TOP_N}")
        if min_score is None:
            min_score = self.default_min_score(content_type)
        if isinstance(min_score, bool) or not isinstance(min_score, (int, float)) or math.isnan(min_score):
            raise ValidationError("minScore must be a number between 0 and 1")
        if not 0.0 <= min_score <= 1.0:
            raise ValidationError("minScore must be between 0 and 1")
        return tenant_id, query, top_n, float(min_score)

    def _retrieve(
        self,
        tenant_id: str,
        query: str,
        content_type: ContentType | None,
        top_n: int | None,
        min_score: float | None,
        include_metadata: bool,
        timeout_ms: int | None,
    ) -> RetrievalResponse:
        started = self._timer()
        explicit_min = min_score is not None
        try:
            tenant_id, query, top_n, min_score = self._validate(tenant_id, query, content_type, top_n, min_score)
        except ValidationError as e:
            return _fail(INVALID_REQUEST, e.message)

        key = self.cache.make_key(tenant_id, query, content_type, top_n, min_score)
        cache_ok = self.cache.is_available()
        if cache_ok:
            cached = self.cache.get(key, tenant_id)
            if cached is not None:
                data = RetrievalData.model_validate(cached)
                data.cached = True
                data.response_time = self._elapsed_ms(started)
                logger.debug("cache hit tenant=%s key=%s", tenant_id, key)
                return RetrievalResponse(success=True, data=data)

        type_label = content_type.value if content_type else "ALL"
        search_started = self._timer()
        try:
            hits = self._search(tenant_id, query, content_type, top_n, min_score, explicit_min, search_started, timeout_ms)
        except ValidationError as e:
            return _fail(INVALID_REQUEST, e.message)
        except (UpstreamFailure, ConfigurationError) as e:
            logger.warning("search failed tenant=%s type=%s: %s", tenant_id, type_label, e)
            self._record(tenant_id, content_type, query, search_started, success=False, error_code=e.code)
            return _fail(SEARCH_FAILED, f"Search failed: {e.message}")
        except Exception as e:
            logger.exception("unexpected search error tenant=%s type=%s", tenant_id, type_label)
            self._record(tenant_id, content_type, query, search_started, success=False, error_code=INTERNAL_ERROR)
            return _fail(INTERNAL_ERROR, f"Internal error: {type(e).__name__}")

        results = [self._to_result(h, query, include_metadata) for h in hits]
        data = RetrievalData(
            query=query,
            content_type=type_label,
            results=results,
            total=len(results),
            average_confidence=round(sum(r.confidence for r in results) / len(results), 6) if results else 0.0,
            retrieval_time=self._elapsed_ms(search_started),
            cached=False,
            breakdown=self._breakdown(results) if content_type is None else None,
        )
        if cache_ok:
            self.cache.set(key, data.model_dump(mode="json", by_alias=True), tenant_id)
        self._record(tenant_id, content_type, query, search_started, success=True, results=len(results))
        data.response_time = self._elapsed_ms(started)
        return RetrievalResponse(success=True, data=data)

    def _search(
        self,
        tenant_id: str,
        query: str,
        content_type: ContentType | None,
        top_n: int,
        min_score: float,
        explicit_min: bool,
        started: float,
        timeout_ms: int | None,
    ) -> list[SearchHit]:
        vector = self.generator.embed(
            query,
            tenant_id=tenant_id,
            content_type=content_type.value if content_type else None,
        )
        self._check_deadline(started, timeout_ms)
        if content_type is not None:
            hits = self.engine.search(
                tenant_id, vector, content_type=content_type, top_n=top_n, min_score=min_score
            )
        else:
            # Fan out so each type keeps its own default threshold; merge by the same ranking.
            hits = []
            for ct in ALL_CONTENT_TYPES:
                floor = min_score if explicit_min else self.default_min_score(ct)
                hits.extend(self.engine.search(tenant_id, vector, content_type=ct, top_n=top_n, min_score=floor))
            hits.sort(key=hit_sort_key)
            hits = hits[:top_n]
        self._check_deadline(started, timeout_ms)
        return hits

    def _elapsed_ms(self, start: float) -> int:
        return int((self._timer() - start) * 1000)

    def _check_deadline(self, started: float, timeout_ms: int | None) -> None:
        if timeout_ms is not None and (self._timer() - started) * 1000 > timeout_ms:
            raise RetrievalTimeout(f"retrieval exceeded {timeout_ms}ms deadline")

    def _to_result(self, hit: SearchHit, query: str, include_metadata: bool) -> ContextResult:
        rec = hit.record
        return ContextResult(
            id=str(rec.id),
            content_type=rec.content_type,
            content_id=rec.content_id,
            content=rec.content,
            similarity=hit.score,
            confidence=hit.score,
            score=round(hit.score, 6),
            text_snippet=make_snippet(rec.content, query, self.max_context_length),
            metadata=rec.metadata if include_metadata else None,
            updated_at=rec.updated_at.isoformat() if rec.updated_at else None,
        )

    @staticmethod
    def _breakdown(results: list[ContextResult]) -> dict[str, int]:
        counts = {ct.value: 0 for ct in ALL_CONTENT_TYPES}
        for r in results:
            counts[r.content_type] = counts.get(r.content_type, 0) + 1
        return counts

    def _record(
        self,
        tenant_id: str,
        content_type: ContentType | None,
        query: str,
        started: float,
        *,
        success: bool,
        error_code: str | None = None,
        results: int = 0,
    ) -> None:
        if self.usage is None:
            return
        self.usage.record_usage(
            tenant_id,
            "embedding_search",
            content_type=content_type.value if content_type else None,
            token_count=estimate_tokens(query),
            api_calls=0,
            processing_time_ms=self._elapsed_ms(started),
            success=success,
            error_code=error_code,
            details={"results": results, "cached": False},
        )
