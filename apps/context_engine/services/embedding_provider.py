"""
Embedding provider abstraction for dependency injection.

EMBED_PROVIDER=deterministic or ENV=test => no network, hash-based vectors.
EMBED_PROVIDER=http (or openai) => OpenAI-compatible /v1/embeddings over httpx.
Otherwise HuggingFace SentenceTransformer (lazy-loaded on first embed).

No import-time model loading; everything is lazy.
"""

import hashlib
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from apps.context_engine.config import DEFAULT_EMBEDDING_DIM, Settings
from apps.context_engine.errors import (
    ConfigurationError,
    EmbeddingGenerationFailed,
    TransientEmbeddingError,
)

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "BAAI/bge-small-en-v1.5"
UNAVAILABLE_MSG = "Embeddings model unavailable. Set EMBEDDINGS_MODEL_PATH for offline use."


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol for embedding generation. Can be swapped for testing."""

    dimension: int
    model_name: str

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts into vectors, one per input, same order."""
        ...


class DeterministicEmbeddingProvider:
    """
    Deterministic provider: fixed-dim vectors from stable hash of text.
    Pure: no network, no randomness. Same input => same output.
    """

    model_name = "deterministic-sha256"

    def __init__(self, dim: int = DEFAULT_EMBEDDING_DIM) -> None:
        self.dimension = dim

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [_hash_to_vector(t, self.dimension) for t in texts]


def _hash_to_vector(text: str, dim: int) -> list[float]:
    """Produce deterministic dim-length vector from text hash. Pure, no randomness."""
    out: list[float] = []
    for i in range(dim):
        h = hashlib.sha256((text + "|" + str(i)).encode()).hexdigest()
        x = int(h[:8], 16) / (2**32) * 2 - 1
        out.append(x)
    return out


class HuggingFaceEmbeddingProvider:
    """
    HuggingFace SentenceTransformer provider. Loads model on first embed() call (lazy).
    Configurable via EMBEDDINGS_MODEL_NAME and EMBEDDINGS_MODEL_PATH.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        model_path: str = "",
        dim: int = DEFAULT_EMBEDDING_DIM,
    ) -> None:
        self.model_name = model_name or DEFAULT_MODEL
        self.model_path = model_path
        self.dimension = dim
        self._model: "SentenceTransformer | None" = None

    def _get_model(self) -> "SentenceTransformer":
        if self._model is None:
            load_from = self.model_path or self.model_name
            logger.info("Loading embedding model: %s", load_from)
            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(load_from)
            except Exception as e:
                raise ConfigurationError(UNAVAILABLE_MSG, details={"model": load_from}) from e
        return self._model

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = self._get_model()
        embs = model.encode(texts)
        return [e.tolist() for e in embs]


class HttpEmbeddingProvider:
    """OpenAI-compatible embeddings API: POST {model, input[]} -> {data: [{index, embedding}]}."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model_name: str,
        dim: int,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("EMBEDDING_API_KEY is required for the http embedding provider")
        self.api_url = api_url
        self.model_name = model_name
        self.dimension = dim
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            r = self._client.post(
                self.api_url,
                headers=self._headers,
                json={"model": self.model_name, "input": texts},
            )
        except httpx.TimeoutException as e:
            raise TransientEmbeddingError(f"embedding request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientEmbeddingError(f"embedding request failed: {e}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise TransientEmbeddingError(
                f"embedding provider returned {r.status_code}",
                details={"status": r.status_code},
            )
        if r.status_code in (401, 403):
            raise ConfigurationError(
                f"embedding provider rejected credentials ({r.status_code})",
                details={"status": r.status_code},
            )
        if r.status_code >= 400:
            raise EmbeddingGenerationFailed(
                f"embedding provider returned {r.status_code}: {r.text[:200]}",
                details={"status": r.status_code},
            )

        try:
            items = r.json()["data"]
            items = sorted(items, key=lambda d: d.get("index", 0))
            vectors = [list(map(float, d["embedding"])) for d in items]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingGenerationFailed(f"malformed embedding response: {e}") from e
        if len(vectors) != len(texts):
            raise EmbeddingGenerationFailed(
                f"embedding provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors

    def close(self) -> None:
        self._client.close()


def _use_deterministic_provider(settings: Settings) -> bool:
    """
    EMBED_PROVIDER=deterministic => always deterministic.
    EMBED_PROVIDER=huggingface/hf/http/openai => that provider.
    Otherwise ENV=test => deterministic.
    """
    explicit = settings.embed_provider
    if explicit == "deterministic":
        return True
    if explicit in ("huggingface", "hf", "http", "openai"):
        return False
    return settings.is_test


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider selected by settings (explicit > ENV=test > huggingface)."""
    if _use_deterministic_provider(settings):
        logger.info("Using deterministic embedding provider (no network)")
        return DeterministicEmbeddingProvider(settings.embedding_dim)
    if settings.embed_provider in ("http", "openai"):
        logger.info("Using http embedding provider url=%s model=%s", settings.embedding_api_url, settings.embedding_api_model)
        return HttpEmbeddingProvider(
            settings.embedding_api_url,
            settings.embedding_api_key,
            settings.embedding_api_model,
            settings.embedding_dim,
            timeout=settings.embedding_api_timeout,
        )
    logger.info("Using HuggingFace embedding provider")
    return HuggingFaceEmbeddingProvider(
        settings.embeddings_model_name,
        settings.embeddings_model_path,
        settings.embedding_dim,
    )
