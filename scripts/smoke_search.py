#!/usr/bin/env python3
"""Smoke test against a running API. Verifies /health, indexing a menu item, search (miss then hit),
delete, and the usage report.

Run with: python scripts/smoke_search.py
Requires: API running. Start API with EMBED_PROVIDER=deterministic (or ENV=test) to avoid HuggingFace.
With the deterministic provider only the exact item text scores high, so the query reuses it.
"""

import os
import sys
import time
import uuid

import requests

API_BASE = os.getenv("API_BASE", "http://localhost:8000").rstrip("/")
TENANT = os.getenv("SMOKE_TENANT", "smoke_smoke")
AUTH_HEADER = f"Bearer tenant:{TENANT}"
ITEM = {"name": "Smoke Pepperoni Pizza"}


def _get(path: str, **kwargs) -> requests.Response:
    return requests.get(f"{API_BASE}{path}", headers={"Authorization": AUTH_HEADER}, timeout=30, **kwargs)


def _post(path: str, body: dict) -> requests.Response:
    return requests.post(f"{API_BASE}{path}", headers={"Authorization": AUTH_HEADER}, json=body, timeout=30)


def _wait_job(job_id: str, timeout: float = 30.0) -> str:
    deadline = time.monotonic() + timeout
    status = "pending"
    while time.monotonic() < deadline:
        status = _get(f"/indexing/jobs/{job_id}").json().get("status", "unknown")
        if status in ("completed", "failed"):
            return status
        time.sleep(0.5)
    return status


def main() -> int:
    failures: list[str] = []
    content_id = f"smoke-{uuid.uuid4().hex[:8]}"
    query = "Smoke Pepperoni Pizza"

    print("1. GET /health ...")
    try:
        r = requests.get(f"{API_BASE}/health", timeout=10)
        if r.status_code != 200 or not r.json().get("ok"):
            print(f"   FAIL: {r.status_code} {r.text[:200]}")
            return 1
        print("   ok")
    except requests.RequestException as e:
        print(f"   FAIL: {e}")
        return 1

    print("2. POST /indexing/jobs (create) ...")
    r = _post(
        "/indexing/jobs",
        {"operation": "create", "contentType": "MENU", "contentId": content_id, "payload": ITEM},
    )
    if r.status_code != 202:
        print(f"   FAIL: {r.status_code} {r.text[:200]}")
        return 1
    status = _wait_job(r.json()["jobId"])
    print(f"   {status}")
    if status != "completed":
        failures.append(f"create job => {status}")

    print("3. POST /search/menu (miss, then hit) ...")
    body = {"query": query, "topN": 3, "minScore": 0.5}
    first = _post("/search/menu", body)
    second = _post("/search/menu", body)
    if first.status_code != 200 or second.status_code != 200:
        failures.append(f"/search/menu => {first.status_code}/{second.status_code}")
    else:
        d1, d2 = first.json()["data"], second.json()["data"]
        ids = [res["contentId"] for res in d1["results"]]
        if content_id not in ids:
            failures.append(f"/search/menu => {content_id} not in {ids}")
        if not d2["cached"]:
            failures.append("/search/menu => second call not cached")
        print(f"   results={d1['total']} cached_second={d2['cached']}")

    print("4. POST /indexing/jobs (delete) ...")
    r = _post("/indexing/jobs", {"operation": "delete", "contentType": "MENU", "contentId": content_id})
    status = _wait_job(r.json()["jobId"]) if r.status_code == 202 else f"http {r.status_code}"
    print(f"   {status}")
    if status != "completed":
        failures.append(f"delete job => {status}")

    print("5. GET /usage/report ...")
    r = _get("/usage/report", params={"period": "day"})
    if r.status_code != 200 or "summary" not in r.json():
        failures.append(f"/usage/report => {r.status_code}")
    else:
        print(f"   total_operations={r.json()['summary']['total_operations']}")

    if failures:
        print("\nFAILURES:")
        for f in failures:
            print(f"  - {f}")
        return 1
    print("\nsmoke ok")
    return 0


if __name__ == "__main__":
    sys.exit(main())
