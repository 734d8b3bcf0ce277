"""Postgres + pgvector: active-key uniqueness and ANN candidate ordering.

Skipped unless DATABASE_TEST_URL points at a reachable Postgres.
"""

import os
import uuid

import pytest
import sqlalchemy.exc

from apps.context_engine.db import Database
from apps.context_engine.models.embedding_record import EMBEDDING_DIM, EmbeddingRecord
from apps.context_engine.services.similarity import SimilaritySearchEngine
from apps.context_engine.services.vector_store import VectorStore
from tests.conftest import requires_db


def _axis(i: int) -> list[float]:
    v = [0.0] * EMBEDDING_DIM
    v[i] = 1.0
    return v


@pytest.fixture
def pg():
    db = Database(os.environ["DATABASE_TEST_URL"])
    db.ensure_tables()
    yield db
    db.dispose()


@pytest.fixture
def tenant() -> str:
    return f"pg_{uuid.uuid4().hex[:8]}"


def test_requires_db_skipped_when_database_test_url_missing(monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_TEST_URL", raising=False)
    from tests.conftest import _db_available_for_tests

    assert _db_available_for_tests() is False


@requires_db
def test_nearest_orders_by_cosine_distance(pg, tenant) -> None:
    store = VectorStore(pg, dimension=EMBEDDING_DIM)
    store.upsert(tenant, "MENU", "x", "x", _axis(0))
    store.upsert(tenant, "MENU", "y", "y", _axis(1))
    store.upsert(tenant, "FAQ", "x-faq", "x faq", _axis(0))

    hits = store.nearest(tenant, _axis(0), "MENU", limit=2)
    assert [h.content_id for h in hits] == ["x", "y"]
    assert store.nearest(f"{tenant}_other", _axis(0)) == []


@requires_db
def test_ann_path_matches_exact_ranking(pg, tenant) -> None:
    store = VectorStore(pg, dimension=EMBEDDING_DIM)
    for i in range(3):
        store.upsert(tenant, "MENU", f"item-{i}", f"item {i}", _axis(i))
    exact = SimilaritySearchEngine(store, ann_index_threshold=0)
    ann = SimilaritySearchEngine(store, ann_index_threshold=1)
    q = _axis(1)
    assert [h.content_id for h in ann.search(tenant, q, top_n=1, min_score=0.5)] == ["item-1"]
    assert [h.content_id for h in exact.search(tenant, q, top_n=1, min_score=0.5)] == ["item-1"]


@requires_db
def test_second_active_row_for_key_is_rejected(pg, tenant) -> None:
    store = VectorStore(pg, dimension=EMBEDDING_DIM)
    store.upsert(tenant, "MENU", "dup", "first", _axis(0))
    with pytest.raises(sqlalchemy.exc.IntegrityError):
        with pg.session() as s:
            s.add(
                EmbeddingRecord(
                    tenant_id=tenant,
                    content_type="MENU",
                    content_id="dup",
                    content="second",
                    vector=_axis(1),
                )
            )
