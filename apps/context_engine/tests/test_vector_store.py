"""Vector store: round trip, idempotent upsert, tenant isolation, soft delete, retention."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from apps.context_engine.errors import NotFoundError, StoreUnavailable, TenantRequiredError, VectorDimensionMismatch
from apps.context_engine.models.base import utcnow
from apps.context_engine.models.embedding_record import EmbeddingRecord

V1 = [1.0, 0.3, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]
V2 = [0.0, 0.0, 1.0, 0.4, 0.0, 0.0, 0.0, 0.0]


def _rows(db, tenant_id: str) -> int:
    with db.session() as s:
        return s.execute(
            select(func.count()).select_from(EmbeddingRecord).where(EmbeddingRecord.tenant_id == tenant_id)
        ).scalar_one()


def test_upsert_then_get_round_trip(store) -> None:
    saved = store.upsert("t1", "MENU", "item-1", "Pepperoni Pizza", V1, {"title": "Pepperoni Pizza"})
    got = store.get("t1", "MENU", "item-1")
    assert got.id == saved.id
    assert got.vector == V1
    assert got.content == "Pepperoni Pizza"
    assert got.metadata == {"title": "Pepperoni Pizza"}
    assert got.is_active
    assert got.updated_at is not None and got.updated_at.tzinfo is not None


def test_upsert_same_key_replaces_in_place(store, db) -> None:
    first = store.upsert("t1", "MENU", "item-1", "Pepperoni Pizza", V1)
    second = store.upsert("t1", "MENU", "item-1", "Cheese Burger", V2, {"v": 2})
    assert second.id == first.id
    assert second.updated_at >= first.updated_at
    assert store.get("t1", "MENU", "item-1").content == "Cheese Burger"
    assert _rows(db, "t1") == 1


def test_same_content_id_in_other_type_is_separate(store) -> None:
    store.upsert("t1", "MENU", "1", "Pizza", V1)
    store.upsert("t1", "FAQ", "1", "Burger?", V2)
    assert store.count("t1") == 2
    assert store.count_by_content_type("t1") == {"MENU": 1, "POLICY": 0, "FAQ": 1, "BUSINESS": 0}


def test_other_tenant_cannot_read(store) -> None:
    store.upsert("t1", "MENU", "item-1", "Pepperoni Pizza", V1)
    with pytest.raises(NotFoundError):
        store.get("t2", "MENU", "item-1")
    assert list(store.list_active("t2")) == []
    assert store.soft_delete("t2", "MENU", "item-1") is False
    assert store.get("t1", "MENU", "item-1").is_active


def test_soft_delete_hides_record_and_is_idempotent(store) -> None:
    store.upsert("t1", "MENU", "item-1", "Pepperoni Pizza", V1)
    assert store.soft_delete("t1", "MENU", "item-1") is True
    assert store.soft_delete("t1", "MENU", "item-1") is False
    with pytest.raises(NotFoundError):
        store.get("t1", "MENU", "item-1")
    deleted = store.get("t1", "MENU", "item-1", include_deleted=True)
    assert deleted.deleted_at is not None
    assert store.count("t1") == 0


def test_recreate_after_delete_makes_new_active_row(store, db) -> None:
    old = store.upsert("t1", "MENU", "item-1", "Pepperoni Pizza", V1)
    store.soft_delete("t1", "MENU", "item-1")
    new = store.upsert("t1", "MENU", "item-1", "Pepperoni Pizza v2", V1)
    assert new.id != old.id
    assert store.get("t1", "MENU", "item-1").content == "Pepperoni Pizza v2"
    assert _rows(db, "t1") == 2
    assert len(list(store.list_active("t1", include_deleted=True))) == 2


def test_list_active_filters_by_type(store) -> None:
    store.upsert("t1", "MENU", "a", "Pizza", V1)
    store.upsert("t1", "POLICY", "b", "Refund", V2)
    assert [r.content_id for r in store.list_active("t1", "MENU")] == ["a"]
    assert {r.content_id for r in store.list_active("t1")} == {"a", "b"}


def test_missing_tenant_raises_before_db(store) -> None:
    with pytest.raises(TenantRequiredError):
        store.upsert("", "MENU", "x", "text", V1)
    with pytest.raises(TenantRequiredError):
        store.list_active(None)
    with pytest.raises(TenantRequiredError):
        store.get("  ", "MENU", "x")


def test_dimension_mismatch_rejected(store) -> None:
    with pytest.raises(VectorDimensionMismatch) as exc:
        store.upsert("t1", "MENU", "x", "text", [1.0, 2.0])
    assert exc.value.expected == store.dimension
    assert exc.value.actual == 2


def test_nearest_requires_pgvector(store) -> None:
    with pytest.raises(StoreUnavailable):
        store.nearest("t1", V1)


def test_purge_deleted_respects_retention(store, db) -> None:
    store.upsert("t1", "MENU", "old", "Pizza", V1)
    store.upsert("t1", "MENU", "recent", "Burger", V2)
    store.upsert("t1", "MENU", "live", "Vegan", V2)
    store.soft_delete("t1", "MENU", "old")
    store.soft_delete("t1", "MENU", "recent")
    with db.session() as s:
        s.execute(
            update(EmbeddingRecord)
            .where(EmbeddingRecord.content_id == "old")
            .values(deleted_at=utcnow() - timedelta(days=45))
        )
    assert store.purge_deleted(30) == 1
    remaining = {r.content_id for r in store.list_active("t1", include_deleted=True)}
    assert remaining == {"recent", "live"}
