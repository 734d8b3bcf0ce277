"""HTTP contract: queue a job, drain the queue, search. Tenant comes from auth only."""

from tests.conftest import auth

PIZZA_JOB = {
    "operation": "create",
    "contentType": "MENU",
    "contentId": "item-1",
    "payload": {"name": "Pepperoni Pizza"},
}


def _index_pizza(client, container, tenant_id: str = "t1") -> str:
    r = client.post("/indexing/jobs", json=PIZZA_JOB, headers=auth(tenant_id))
    assert r.status_code == 202
    body = r.json()
    assert body["status"] == "pending"
    assert container.indexing.drain() == 1
    return body["jobId"]


def test_job_then_search_returns_item(client, container) -> None:
    job_id = _index_pizza(client, container)

    r = client.get(f"/indexing/jobs/{job_id}", headers=auth("t1"))
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = client.post("/search/menu", json={"query": "Pepperoni Pizza", "minScore": 0.99}, headers=auth("t1"))
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    data = body["data"]
    assert data["contentType"] == "MENU"
    assert data["total"] == 1
    assert data["cached"] is False
    hit = data["results"][0]
    assert hit["contentId"] == "item-1"
    assert hit["confidence"] > 0.99
    assert "tenant_id" not in hit

    again = client.post("/search/menu", json={"query": "pepperoni  pizza", "minScore": 0.99}, headers=auth("t1"))
    assert again.json()["data"]["cached"] is True


def test_search_is_tenant_isolated(client, container) -> None:
    _index_pizza(client, container, "t1")
    r = client.post("/search/menu", json={"query": "Pepperoni Pizza", "minScore": 0.0}, headers=auth("t2"))
    assert r.status_code == 200
    assert r.json()["data"]["total"] == 0


def test_job_status_hidden_from_other_tenant(client, container) -> None:
    job_id = _index_pizza(client, container, "t1")
    assert client.get(f"/indexing/jobs/{job_id}", headers=auth("t2")).status_code == 404


def test_search_all_has_breakdown(client, container) -> None:
    _index_pizza(client, container)
    r = client.post("/search/all", json={"query": "Pepperoni Pizza", "minScore": 0.99}, headers=auth("t1"))
    data = r.json()["data"]
    assert data["contentType"] == "ALL"
    assert data["breakdown"]["MENU"] == 1
    assert set(data["breakdown"]) == {"MENU", "POLICY", "FAQ", "BUSINESS"}


def test_invalid_search_is_400_envelope(client) -> None:
    r = client.post("/search/faqs", json={"query": "   "}, headers=auth("t1"))
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": {"code": "INVALID_REQUEST", "message": "query is required"}}

    r = client.post("/search/faqs", json={"query": "hours", "topN": 50}, headers=auth("t1"))
    assert r.status_code == 400


def test_body_tenant_id_is_rejected(client) -> None:
    r = client.post("/search/menu", json={"query": "pizza", "tenant_id": "t2"}, headers=auth("t1"))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_REQUEST"

    job = dict(PIZZA_JOB, tenantId="t2")
    assert client.post("/indexing/jobs", json=job, headers=auth("t1")).status_code == 400


def test_bad_content_type_job_is_400(client) -> None:
    job = dict(PIZZA_JOB, contentType="RECIPE")
    r = client.post("/indexing/jobs", json=job, headers=auth("t1"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_REQUEST"


def test_batch_status(client, container) -> None:
    jobs = [PIZZA_JOB, dict(PIZZA_JOB, contentId="item-2", payload={"name": "Cheese Burger"})]
    r = client.post("/indexing/batches", json={"jobs": jobs}, headers=auth("t1"))
    assert r.status_code == 202
    accepted = r.json()
    assert len(accepted["jobIds"]) == 2
    container.indexing.drain()

    r = client.get(f"/indexing/batches/{accepted['batchId']}", headers=auth("t1"))
    assert r.status_code == 200
    assert client.get(f"/indexing/batches/{accepted['batchId']}", headers=auth("t2")).status_code == 404


def test_usage_report_counts_own_operations(client, container) -> None:
    _index_pizza(client, container)
    client.post("/search/menu", json={"query": "Pepperoni Pizza"}, headers=auth("t1"))

    report = client.get("/usage/report", params={"period": "day"}, headers=auth("t1")).json()
    ops = report["breakdown"]["by_operation"]
    assert ops["embedding_search"]["operations"] == 1
    assert ops["indexing_job"]["operations"] == 1

    other = client.get("/usage/report", headers=auth("t2")).json()
    assert other["summary"]["total_operations"] == 0
    assert client.get("/usage/report", params={"period": "year"}, headers=auth("t1")).status_code == 400


def test_usage_export_csv_and_json(client, container) -> None:
    _index_pizza(client, container)

    r = client.get("/usage/export", params={"format": "csv"}, headers=auth("t1"))
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.text.splitlines()
    assert lines[0].startswith("created_at,operation,")
    assert sorted(line.split(",")[1] for line in lines[1:]) == ["embedding_generation", "indexing_job"]

    rows = client.get("/usage/export", headers=auth("t1")).json()
    assert len(rows) == 2
    assert client.get("/usage/export", headers=auth("t2")).json() == []
    assert client.get("/usage/export", params={"format": "xml"}, headers=auth("t1")).status_code == 400


def test_search_stats(client, container) -> None:
    _index_pizza(client, container)
    stats = client.get("/search/stats", headers=auth("t1")).json()
    assert stats["total_embeddings"] == 1


def test_health_is_public(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["database"] is True
    assert body["workers"] == 0
