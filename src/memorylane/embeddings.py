"""Embedding providers: text in, fixed-length float vector out.

Three implementations share one async interface:

- ``OllamaEmbeddingProvider`` calls a local Ollama server over HTTP (default).
- ``SentenceTransformerProvider`` runs a sentence-transformers model in-process.
- ``HashEmbeddingProvider`` returns deterministic placeholder vectors. Results
  ranked with it are flagged as degraded.

Batch calls are atomic: if any item fails, the whole call fails.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx
import numpy as np

from .constants import (
    DEFAULT_EMBEDDING_DIMENSION,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_LOCAL_EMBEDDING_MODEL,
    DEFAULT_OLLAMA_BASE_URL,
    EMBEDDING_BATCH_SIZE,
    EMBEDDING_HEALTH_CHECK_INTERVAL,
    EMBEDDING_HEALTH_CHECK_TIMEOUT,
)
from .errors import ConfigError, EmbeddingUnavailable, InvalidInput, OperationTimeout

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

_VECTOR_DTYPE = np.dtype("<f4")


class EmbeddingStatus(Enum):
    """Status of the embedding subsystem."""

    READY = "ready"
    DEGRADED = "degraded"  # Reachable but model missing, or placeholder vectors
    UNAVAILABLE = "unavailable"  # Endpoint unreachable or model failed to load


@dataclass
class EmbeddingHealth:
    """Health status of an embedding provider."""

    status: EmbeddingStatus
    error: str | None = None
    embedding_model: str | None = None
    dimension: int | None = None


@runtime_checkable
class EmbeddingProvider(Protocol):
    """What the extractor and retrieval engine need from an embedder."""

    @property
    def model_name(self) -> str: ...

    @property
    def dimensions(self) -> int: ...

    @property
    def is_placeholder(self) -> bool: ...

    async def embed(self, text: str) -> list[float]: ...

    async def embed_many(self, texts: list[str]) -> list[list[float]]: ...

    async def check_health(self) -> EmbeddingHealth: ...

    async def aclose(self) -> None: ...


def encode_vector(vector: list[float]) -> bytes:
    """Pack a vector as a little-endian float32 blob."""
    return np.asarray(vector, dtype=_VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype=_VECTOR_DTYPE).astype(float).tolist()


def _require_text(text: str) -> str:
    if not isinstance(text, str) or not text.strip():
        raise InvalidInput("Cannot embed empty text")
    return text


class OllamaEmbeddingProvider:
    """Embeddings from an Ollama server's ``/api/embed`` endpoint."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_BASE_URL,
        model: str = DEFAULT_EMBEDDING_MODEL,
        dimensions: int = DEFAULT_EMBEDDING_DIMENSION,
        timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            base_url: Ollama server URL
            model: Embedding model name (must be pulled on the server)
            dimensions: Declared vector length; responses of another length fail
            timeout: Per-request deadline in seconds
            client: Pre-built client (tests inject one with a mock transport)
        """
        self._model_name = model
        self._dims = dimensions
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._health: EmbeddingHealth | None = None
        self._health_checked_at = 0.0

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dims

    @property
    def is_placeholder(self) -> bool:
        return False

    async def embed(self, text: str) -> list[float]:
        vectors = await self._request([_require_text(text)])
        return vectors[0]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in input order, at most 100 per request."""
        texts = [_require_text(t) for t in texts]
        vectors: list[list[float]] = []
        for start in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            vectors.extend(await self._request(texts[start:start + EMBEDDING_BATCH_SIZE]))
        return vectors

    async def _request(self, inputs: list[str]) -> list[list[float]]:
        try:
            response = await self._client.post(
                "/api/embed",
                json={"model": self._model_name, "input": inputs},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise OperationTimeout(
                f"Embedding request timed out after {self.timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            self._health = None
            raise EmbeddingUnavailable(
                f"Ollama returned HTTP {e.response.status_code} for model {self._model_name}"
            ) from e
        except httpx.TransportError as e:
            self._health = None
            raise EmbeddingUnavailable(f"Ollama unreachable: {e}") from e

        try:
            embeddings = response.json()["embeddings"]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingUnavailable(f"Malformed embedding response: {e}") from e

        if not isinstance(embeddings, list) or len(embeddings) != len(inputs):
            raise EmbeddingUnavailable(
                f"Expected {len(inputs)} embeddings, got "
                f"{len(embeddings) if isinstance(embeddings, list) else 'none'}"
            )
        vectors = []
        for vector in embeddings:
            if len(vector) != self._dims:
                raise EmbeddingUnavailable(
                    f"Model {self._model_name} returned {len(vector)} dimensions, "
                    f"expected {self._dims}"
                )
            vectors.append([float(x) for x in vector])
        return vectors

    async def check_health(self) -> EmbeddingHealth:
        """Check the server and that the model is pulled; cached for five minutes."""
        now = time.monotonic()
        if self._health is not None and now - self._health_checked_at < EMBEDDING_HEALTH_CHECK_INTERVAL:
            return self._health

        try:
            response = await self._client.get("/api/tags", timeout=EMBEDDING_HEALTH_CHECK_TIMEOUT)
            response.raise_for_status()
            models = [m.get("name", "") for m in response.json().get("models", [])]
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"Embedding health check failed: {e}")
            health = EmbeddingHealth(
                status=EmbeddingStatus.UNAVAILABLE,
                error=f"Ollama unreachable: {e}",
                embedding_model=self._model_name,
            )
        else:
            pulled = any(
                name == self._model_name or name.startswith(f"{self._model_name}:")
                for name in models
            )
            if pulled:
                health = EmbeddingHealth(
                    status=EmbeddingStatus.READY,
                    embedding_model=self._model_name,
                    dimension=self._dims,
                )
            else:
                health = EmbeddingHealth(
                    status=EmbeddingStatus.DEGRADED,
                    error=f"Model {self._model_name} not pulled (ollama pull {self._model_name})",
                    embedding_model=self._model_name,
                )

        self._health = health
        self._health_checked_at = now
        return health

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class SentenceTransformerProvider:
    """In-process embeddings via sentence-transformers.

    The model is loaded lazily on first use to avoid the multi-second cold
    start; encoding runs in a worker thread under the configured deadline.
    """

    def __init__(
        self,
        model: str = DEFAULT_LOCAL_EMBEDDING_MODEL,
        dimensions: int | None = None,
        timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
    ):
        self._model_name = model
        self._model = None
        self._dims = dimensions
        self.timeout = timeout
        self.health = EmbeddingHealth(
            status=EmbeddingStatus.DEGRADED,
            error="Embedding model loads on first use",
            embedding_model=model,
        )
        self._load_lock = asyncio.Lock()

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dims or 0

    @property
    def is_placeholder(self) -> bool:
        return False

    def _load_model(self):
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(self._model_name)

    async def _ensure_model(self):
        if self._model is not None:
            return self._model
        async with self._load_lock:
            if self._model is not None:
                return self._model
            try:
                model = await asyncio.to_thread(self._load_model)
            except (ImportError, OSError, RuntimeError) as e:
                self.health = EmbeddingHealth(
                    status=EmbeddingStatus.UNAVAILABLE,
                    error=f"Embedding model failed: {e}",
                    embedding_model=self._model_name,
                )
                logger.warning(f"Embedding model unavailable: {e}")
                raise EmbeddingUnavailable(f"Embedding model failed: {e}") from e

            actual = model.get_sentence_embedding_dimension()
            if self._dims and actual != self._dims:
                logger.warning(
                    f"Model {self._model_name} produces {actual} dimensions, "
                    f"configured {self._dims}; using {actual}"
                )
            self._dims = actual
            self._model = model
            self.health = EmbeddingHealth(
                status=EmbeddingStatus.READY,
                embedding_model=self._model_name,
                dimension=actual,
            )
            return model

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        texts = [_require_text(t) for t in texts]
        if not texts:
            return []
        model = await self._ensure_model()
        try:
            encoded = await asyncio.wait_for(
                asyncio.to_thread(model.encode, texts), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeout(
                f"Embedding request timed out after {self.timeout}s"
            ) from e
        return np.asarray(encoded, dtype=float).tolist()

    async def check_health(self) -> EmbeddingHealth:
        try:
            await self._ensure_model()
        except EmbeddingUnavailable as e:
            logger.debug(f"Health check: {e}")
        return self.health

    async def aclose(self) -> None:
        self._model = None


class HashEmbeddingProvider:
    """Deterministic placeholder vectors derived from a hash of the text.

    Identical texts map to identical unit vectors, so duplicate detection
    still works for verbatim repeats; anything finer is noise.
    """

    def __init__(self, dimensions: int = DEFAULT_EMBEDDING_DIMENSION):
        self._dims = dimensions

    @property
    def model_name(self) -> str:
        return "hash-placeholder"

    @property
    def dimensions(self) -> int:
        return self._dims

    @property
    def is_placeholder(self) -> bool:
        return True

    def _vector(self, text: str) -> list[float]:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
        values = np.random.default_rng(seed).standard_normal(self._dims)
        return (values / np.linalg.norm(values)).tolist()

    async def embed(self, text: str) -> list[float]:
        return self._vector(_require_text(text))

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(_require_text(t)) for t in texts]

    async def check_health(self) -> EmbeddingHealth:
        return EmbeddingHealth(
            status=EmbeddingStatus.DEGRADED,
            error="placeholder embeddings",
            embedding_model=self.model_name,
            dimension=self._dims,
        )

    async def aclose(self) -> None:
        return None


def create_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider named by ``settings.embedding_provider``."""
    if settings.embedding_provider == "ollama":
        return OllamaEmbeddingProvider(
            base_url=settings.ollama_base_url,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout=settings.embedding_timeout,
        )
    if settings.embedding_provider == "sentence-transformers":
        return SentenceTransformerProvider(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout=settings.embedding_timeout,
        )
    if settings.embedding_provider == "hash":
        return HashEmbeddingProvider(dimensions=settings.embedding_dimensions)
    raise ConfigError(f"Unknown embedding provider: {settings.embedding_provider}")
