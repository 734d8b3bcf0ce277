"""Root conftest: env and test DB bootstrap apply to ALL test paths (tests/, apps/context_engine/tests/)."""

import os

import pytest

# Deterministic embeddings, no network, no HuggingFace download
os.environ.setdefault("ENV", "test")
os.environ.setdefault("EMBED_PROVIDER", "deterministic")

DATABASE_TEST_URL = os.getenv("DATABASE_TEST_URL")

from tests._db_bootstrap import (  # noqa: E402
    ensure_test_db_guard,
    postgres_reachable,
    reset_test_db_schema,
)

# Fails early if DATABASE_TEST_URL points at a non-test database
if DATABASE_TEST_URL:
    ensure_test_db_guard(DATABASE_TEST_URL)


@pytest.fixture(scope="session", autouse=True)
def test_db_schema():
    """Reset the Postgres test schema once per session. Only runs if DATABASE_TEST_URL is
    set and reachable; otherwise requires_db tests are skipped and the rest use SQLite."""
    if not DATABASE_TEST_URL or not postgres_reachable(DATABASE_TEST_URL):
        return
    reset_test_db_schema(DATABASE_TEST_URL)
