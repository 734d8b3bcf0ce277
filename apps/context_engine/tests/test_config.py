"""Settings: env parsing, defaults, validation."""

import pytest

from apps.context_engine.config import Settings
from apps.context_engine.errors import ConfigurationError


def test_from_env_reads_values(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("ENV", " Test ")
    monkeypatch.setenv("EMBEDDING_DIM", "16")
    monkeypatch.setenv("VECTOR_SEARCH_TOPN", "7")
    monkeypatch.setenv("VECTOR_SEARCH_MINSCORE", "0.8")
    monkeypatch.setenv("EMBEDDING_RETRY_DELAY_MS", "250")
    monkeypatch.setenv("TENANTS", "t1, t2,,")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example")
    s = Settings.from_env()
    assert s.database_url == "sqlite://"
    assert s.is_test
    assert s.embedding_dim == 16
    assert s.search_top_n == 7
    assert s.search_min_score == 0.8
    assert s.retry_delay_seconds == 0.25
    assert s.tenants == ["t1", "t2"]
    assert s.cors_origins == ["https://a.example"]


def test_unparseable_numbers_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("EMBEDDING_BATCH_SIZE", "ten")
    monkeypatch.setenv("SEARCH_CACHE_TTL", "")
    s = Settings.from_env()
    assert s.embedding_batch_size == 10
    assert s.cache_ttl_seconds == 300


@pytest.mark.parametrize(
    "overrides",
    [
        {"embedding_dim": 0},
        {"search_min_score": 1.2},
        {"document_min_score": -0.1},
        {"embedding_batch_size": 0},
        {"embedding_retry_attempts": 0},
        {"cache_provider": "redis"},
    ],
)
def test_validate_rejects_bad_values(overrides) -> None:
    with pytest.raises(ConfigurationError):
        Settings(**overrides).validate()


def test_defaults_are_valid() -> None:
    s = Settings()
    s.validate()
    assert s.search_min_score == 0.75
    assert s.document_min_score == 0.65
    assert s.retry_delay_seconds == 1.0
