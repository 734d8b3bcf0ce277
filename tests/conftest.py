"""Pytest fixtures for root-level tests (tenant isolation, HTTP contract, repo guards)."""

import os

import pytest
from fastapi.testclient import TestClient

from apps.context_engine.config import Settings
from apps.context_engine.db import Database
from apps.context_engine.main import create_app
from apps.context_engine.services.container import build_container
from apps.context_engine.services.embedding_provider import DeterministicEmbeddingProvider
from tests._db_bootstrap import postgres_reachable

TEST_DIM = 8


def _db_available_for_tests() -> bool:
    """True if DATABASE_TEST_URL is set and Postgres is reachable (short timeout)."""
    url = os.environ.get("DATABASE_TEST_URL")
    if not url:
        return False
    return postgres_reachable(url)


# Marker for DB tests: skip if DATABASE_TEST_URL not set or Postgres not reachable
requires_db = pytest.mark.skipif(
    not _db_available_for_tests(),
    reason="DATABASE_TEST_URL not set or Postgres not reachable",
)


def auth(tenant_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer tenant:{tenant_id}"}


@pytest.fixture
def container():
    """In-memory SQLite container with the hash provider; workers are not started."""
    db = Database("sqlite://")
    db.ensure_tables()
    settings = Settings(database_url="sqlite://", env="test", embedding_dim=TEST_DIM)
    c = build_container(
        settings,
        db=db,
        provider=DeterministicEmbeddingProvider(TEST_DIM),
        sleep=lambda _s: None,
    )
    yield c
    c.shutdown()


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as c:
        yield c
