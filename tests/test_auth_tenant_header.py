"""Auth middleware: tenant from Authorization only; debug header gated on ENV=test."""

import pytest

from apps.context_engine.services.auth import extract_tenant
from tests.conftest import auth


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer tenant:t1", "t1"),
        ("Bearer tenant=acme", "acme"),
        ("bearer TENANT: spaced ", "spaced"),
        ("Bearer abc.def", None),
        ("Basic dXNlcg==", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_tenant(header, expected) -> None:
    assert extract_tenant(header) == expected


def test_missing_auth_is_401_envelope(client) -> None:
    r = client.post("/search/menu", json={"query": "pizza"})
    assert r.status_code == 401
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"


def test_query_param_tenant_is_ignored(client) -> None:
    r = client.get("/usage/report", params={"tenant_id": "t1"})
    assert r.status_code == 401


def test_debug_header_needs_flag(client, monkeypatch) -> None:
    monkeypatch.setenv("ENV", "test")
    monkeypatch.delenv("ENABLE_TEST_TENANT_HEADER", raising=False)
    assert client.get("/usage/report", headers={"X-Tenant-Debug": "t1"}).status_code == 401

    monkeypatch.setenv("ENABLE_TEST_TENANT_HEADER", "1")
    r = client.get("/usage/report", headers={"X-Tenant-Debug": "t1"})
    assert r.status_code == 200
    assert r.json()["tenant_id"] == "t1"


def test_debug_header_ignored_outside_test_env(client, monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("ENABLE_TEST_TENANT_HEADER", "1")
    assert client.get("/usage/report", headers={"X-Tenant-Debug": "t1"}).status_code == 401


def test_authorization_wins_over_debug_header(client, monkeypatch) -> None:
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("ENABLE_TEST_TENANT_HEADER", "1")
    headers = {**auth("t1"), "X-Tenant-Debug": "t2"}
    assert client.get("/usage/report", headers=headers).json()["tenant_id"] == "t1"
