"""Embedding providers for capability and memory similarity search."""

from __future__ import annotations

import logging
import math
import threading
from typing import Callable, Protocol, Sequence, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

OLLAMA_EMBED_TIMEOUT = 30.0


class EmbeddingUnavailableError(Exception):
    """Raised when an embedding backend cannot load or embed."""

    pass


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text -> fixed-dimension vector capability."""

    name: str

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1].

    Mismatched dimensions or zero vectors score 0.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


class ChromaEmbeddingProvider:
    """Local ONNX MiniLM embeddings via chromadb's default embedding function.

    The model is loaded on first use; concurrent first callers share a
    single load.
    """

    name = "chroma-default"

    def __init__(self) -> None:
        self._fn = None
        self._load_lock = threading.Lock()

    def _function(self):
        if self._fn is None:
            with self._load_lock:
                if self._fn is None:
                    try:
                        from chromadb.utils.embedding_functions import DefaultEmbeddingFunction

                        logger.info("Loading chromadb default embedding function (first load may download the model)")
                        self._fn = DefaultEmbeddingFunction()
                    except Exception as e:
                        raise EmbeddingUnavailableError(f"Failed to load embedding model: {e}") from e
        return self._fn

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        fn = self._function()
        try:
            vectors = fn(list(texts))
        except Exception as e:
            raise EmbeddingUnavailableError(f"Embedding failed: {e}") from e
        return [[float(x) for x in vector] for vector in vectors]

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)


class OllamaEmbeddingProvider:
    """Embeddings served by a local Ollama instance."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        timeout: float = OLLAMA_EMBED_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/api/embed",
                    json={"model": self.model, "input": list(texts)},
                )
                response.raise_for_status()
                embeddings = response.json().get("embeddings", [])
        except httpx.HTTPError as e:
            logger.warning(f"Ollama embedding request failed: {e}")
            raise EmbeddingUnavailableError(f"Ollama embeddings unavailable: {e}") from e

        if len(embeddings) != len(texts):
            raise EmbeddingUnavailableError(
                f"Ollama returned {len(embeddings)} embeddings for {len(texts)} inputs"
            )
        return embeddings

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)


def create_embedding_provider(
    backend: str,
    ollama_base_url: str = "http://localhost:11434",
    ollama_model: str = "nomic-embed-text",
) -> EmbeddingProvider | None:
    """Build a provider for the configured backend, or None for keyword-only mode."""
    if backend == "chroma":
        return ChromaEmbeddingProvider()
    if backend == "ollama":
        return OllamaEmbeddingProvider(base_url=ollama_base_url, model=ollama_model)
    return None


class SharedEmbeddingHandle:
    """Process-owned, reference-counted handle to one embedding provider.

    The provider is created once, by whichever caller acquires first;
    concurrent first callers block on the same initialization.
    """

    def __init__(self, factory: Callable[[], EmbeddingProvider | None]):
        self._factory = factory
        self._provider: EmbeddingProvider | None = None
        self._initialized = False
        self._refs = 0
        self._lock = threading.Lock()

    def acquire(self) -> EmbeddingProvider | None:
        with self._lock:
            if not self._initialized:
                self._provider = self._factory()
                self._initialized = True
            self._refs += 1
            return self._provider

    def release(self) -> None:
        with self._lock:
            self._refs = max(0, self._refs - 1)

    @property
    def refcount(self) -> int:
        with self._lock:
            return self._refs


# Global handles, one per backend
_shared_handles: dict[str, SharedEmbeddingHandle] = {}
_shared_lock = threading.Lock()


def get_shared_embeddings(
    backend: str,
    ollama_base_url: str = "http://localhost:11434",
    ollama_model: str = "nomic-embed-text",
) -> SharedEmbeddingHandle:
    """Get or create the process-wide handle for an embedding backend."""
    key = f"{backend}:{ollama_base_url}:{ollama_model}"
    with _shared_lock:
        if key not in _shared_handles:
            _shared_handles[key] = SharedEmbeddingHandle(
                lambda: create_embedding_provider(backend, ollama_base_url, ollama_model)
            )
        return _shared_handles[key]
