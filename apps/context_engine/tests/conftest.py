"""Pytest fixtures for context engine tests. Everything runs on in-memory SQLite."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from apps.context_engine.config import Settings
from apps.context_engine.db import Database
from apps.context_engine.errors import TransientEmbeddingError
from apps.context_engine.services.container import build_container

# Keyword weights: one vector axis per word. "pizza" vs "Pepperoni Pizza" scores ~0.96.
VOCAB = {
    "pizza": 1.0,
    "pepperoni": 0.3,
    "burger": 1.0,
    "cheese": 0.4,
    "refund": 1.0,
    "hours": 1.0,
    "vegan": 1.0,
    "catering": 1.0,
}
_WORD = re.compile(r"[a-z]+")


class KeywordEmbeddingProvider:
    """Bag-of-keywords vectors so tests can reason about scores exactly.

    fail_next makes the next N embed() calls raise `error`.
    """

    model_name = "keyword-test"

    def __init__(self) -> None:
        self.dimension = len(VOCAB)
        self.calls: list[list[str]] = []
        self.fail_next = 0
        self.error: Exception = TransientEmbeddingError("provider returned 503")

    def vector(self, text: str) -> list[float]:
        words = _WORD.findall(text.lower())
        return [weight * words.count(word) for word, weight in VOCAB.items()]

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_next > 0:
            self.fail_next -= 1
            raise self.error
        return [self.vector(t) for t in texts]


class FakeClock:
    """Settable UTC clock for the usage tracker and indexing service."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.ensure_tables()
    yield database
    database.dispose()


@pytest.fixture
def provider():
    return KeywordEmbeddingProvider()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the generator and the indexing service."""
    return []


@pytest.fixture
def settings(provider):
    return Settings(database_url="sqlite://", env="test", embedding_dim=provider.dimension)


@pytest.fixture
def container(settings, db, provider, sleeps):
    c = build_container(settings, db=db, provider=provider, sleep=sleeps.append)
    yield c
    c.indexing.stop(timeout=2.0)


@pytest.fixture
def usage(container):
    return container.usage


@pytest.fixture
def generator(container):
    return container.generator


@pytest.fixture
def store(container):
    return container.store


@pytest.fixture
def engine(container):
    return container.engine


@pytest.fixture
def cache(container):
    return container.cache


@pytest.fixture
def retriever(container):
    return container.retriever


@pytest.fixture
def indexing(container):
    return container.indexing


@pytest.fixture
def clock():
    return FakeClock()
