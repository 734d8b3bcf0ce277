"""Similarity search: cosine similarity over a tenant's active vectors, thresholded and ranked.

Small tenants are scanned exactly. Above ann_index_threshold active vectors (Postgres
only) the pgvector HNSW index supplies an over-fetched candidate set which is then
re-scored exactly, so ranking, ties and threshold behave the same on both paths.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import numpy as np

from apps.context_engine.errors import ValidationError, VectorDimensionMismatch
from apps.context_engine.schemas.content import ContentType, parse_content_type
from apps.context_engine.services.tenant_guard import require_tenant_id
from apps.context_engine.services.vector_store import StoredEmbedding, VectorStore

logger = logging.getLogger(__name__)

MAX_TOP_N = 50
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class SearchHit:
    record: StoredEmbedding
    score: float

    @property
    def content_type(self) -> str:
        return self.record.content_type

    @property
    def content_id(self) -> str:
        return self.record.content_id


@dataclass
class SearchOptions:
    content_type: ContentType | None = None
    top_n: int = 5
    min_score: float = 0.75

    def validate(self) -> None:
        if not 1 <= self.top_n <= MAX_TOP_N:
            raise ValidationError(f"top_n must be between 1 and {MAX_TOP_N}")
        if not 0.0 <= self.min_score <= 1.0:
            raise ValidationError("min_score must be between 0 and 1")


def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float:
    """Cosine similarity in float64. Zero-magnitude input -> 0.0; length mismatch raises."""
    va = np.asarray(list(a), dtype=np.float64)
    vb = np.asarray(list(b), dtype=np.float64)
    if va.shape != vb.shape:
        raise VectorDimensionMismatch(va.shape[0], vb.shape[0])
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def rank_candidates(
    query_vector: list[float],
    candidates: Iterable[StoredEmbedding],
    top_n: int,
    min_score: float,
) -> list[SearchHit]:
    """Score, drop below min_score, sort by score desc then newest updated_at, cut to top_n."""
    hits = []
    for rec in candidates:
        score = cosine_similarity(query_vector, rec.vector)
        if score >= min_score:
            hits.append(SearchHit(record=rec, score=score))
    hits.sort(key=hit_sort_key)
    return hits[:top_n]


def hit_sort_key(hit: SearchHit) -> tuple:
    """Score desc, newer updated_at first, then content type/id for a total order."""
    return (
        -hit.score,
        -(hit.record.updated_at or _EPOCH).timestamp(),
        hit.record.content_type,
        hit.record.content_id,
    )


class SimilaritySearchEngine:
    """Ranked, thresholded nearest-content lookup for one tenant."""

    def __init__(self, store: VectorStore, *, ann_index_threshold: int = 5000) -> None:
        self.store = store
        self.ann_index_threshold = ann_index_threshold

    def search(
        self,
        tenant_id: str,
        query_vector: list[float],
        *,
        content_type: "ContentType | str | None" = None,
        top_n: int = 5,
        min_score: float = 0.75,
    ) -> list[SearchHit]:
        tenant_id = require_tenant_id(tenant_id)
        opts = SearchOptions(
            content_type=parse_content_type(content_type, allow_all=True),
            top_n=top_n,
            min_score=min_score,
        )
        opts.validate()
        if len(query_vector) != self.store.dimension:
            raise VectorDimensionMismatch(self.store.dimension, len(query_vector))

        if self._use_ann(tenant_id, opts.content_type):
            candidates = self.store.nearest(
                tenant_id,
                query_vector,
                opts.content_type,
                limit=max(opts.top_n * 4, 50),
            )
            logger.debug("ann search tenant=%s candidates=%s", tenant_id, len(candidates))
        else:
            candidates = self.store.list_active(tenant_id, opts.content_type)
        return rank_candidates(query_vector, candidates, opts.top_n, opts.min_score)

    def _use_ann(self, tenant_id: str, content_type: ContentType | None) -> bool:
        if not self.store.db.is_postgres or self.ann_index_threshold <= 0:
            return False
        return self.store.count(tenant_id, content_type) > self.ann_index_threshold

    def search_stats(self, tenant_id: str) -> dict[str, Any]:
        by_type = self.store.count_by_content_type(tenant_id)
        return {"total_embeddings": sum(by_type.values()), "by_content_type": by_type}
