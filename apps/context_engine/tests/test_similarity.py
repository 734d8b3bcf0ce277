"""Similarity search: cosine math, threshold, ranking and tie order, tenant scoping."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from apps.context_engine.errors import ValidationError, VectorDimensionMismatch
from apps.context_engine.services.similarity import cosine_similarity, rank_candidates
from apps.context_engine.services.vector_store import StoredEmbedding


def _rec(content_id: str, vector: list[float], *, updated_at: datetime | None = None, ct: str = "MENU"):
    return StoredEmbedding(
        id=0,
        tenant_id="t1",
        content_type=ct,
        content_id=content_id,
        content=content_id,
        vector=vector,
        updated_at=updated_at,
    )


def test_cosine_basics() -> None:
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
    assert cosine_similarity([1, 1], [1, 0]) == pytest.approx(1 / math.sqrt(2))


def test_cosine_zero_vector_is_zero() -> None:
    assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0


def test_cosine_length_mismatch_raises() -> None:
    with pytest.raises(VectorDimensionMismatch):
        cosine_similarity([1, 0, 0], [1, 0])


def test_rank_drops_below_threshold_and_sorts_desc() -> None:
    q = [1.0, 0.0]
    hits = rank_candidates(
        q,
        [_rec("low", [0.2, 1.0]), _rec("best", [1.0, 0.0]), _rec("mid", [1.0, 0.5])],
        top_n=5,
        min_score=0.5,
    )
    assert [h.content_id for h in hits] == ["best", "mid"]
    assert hits[0].score >= hits[1].score


def test_score_equal_to_threshold_is_kept() -> None:
    hits = rank_candidates([1.0, 0.0], [_rec("exact", [1.0, 0.0])], top_n=1, min_score=1.0)
    assert [h.content_id for h in hits] == ["exact"]


def test_ties_prefer_newer_then_id() -> None:
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    hits = rank_candidates(
        [1.0, 0.0],
        [
            _rec("b", [2.0, 0.0], updated_at=now),
            _rec("old", [1.0, 0.0], updated_at=now - timedelta(days=1)),
            _rec("a", [3.0, 0.0], updated_at=now),
        ],
        top_n=3,
        min_score=0.0,
    )
    assert [h.content_id for h in hits] == ["a", "b", "old"]


def test_top_n_cuts_results() -> None:
    recs = [_rec(str(i), [1.0, i / 10]) for i in range(10)]
    hits = rank_candidates([1.0, 0.0], recs, top_n=3, min_score=0.0)
    assert [h.content_id for h in hits] == ["0", "1", "2"]


def test_engine_search_is_tenant_and_type_scoped(engine, store, provider) -> None:
    store.upsert("t1", "MENU", "pizza", "Pepperoni Pizza", provider.vector("Pepperoni Pizza"))
    store.upsert("t1", "FAQ", "pizza-faq", "Do you sell pizza?", provider.vector("Do you sell pizza?"))
    store.upsert("t2", "MENU", "pizza", "Pizza", provider.vector("Pizza"))
    q = provider.vector("pizza")

    hits = engine.search("t1", q, content_type="MENU", top_n=5, min_score=0.75)
    assert [(h.content_type, h.content_id) for h in hits] == [("MENU", "pizza")]
    assert hits[0].score >= 0.9
    assert all(h.record.tenant_id == "t1" for h in engine.search("t1", q, top_n=5, min_score=0.0))
    assert engine.search("t3", q, top_n=5, min_score=0.0) == []


def test_engine_search_validates_options(engine, provider) -> None:
    q = provider.vector("pizza")
    with pytest.raises(ValidationError):
        engine.search("t1", q, top_n=0)
    with pytest.raises(ValidationError):
        engine.search("t1", q, min_score=1.5)
    with pytest.raises(VectorDimensionMismatch):
        engine.search("t1", [1.0, 0.0], top_n=5)


def test_search_stats_counts_by_type(engine, store, provider) -> None:
    store.upsert("t1", "MENU", "a", "Pizza", provider.vector("Pizza"))
    stats = engine.search_stats("t1")
    assert stats["total_embeddings"] == 1
    assert stats["by_content_type"]["MENU"] == 1
