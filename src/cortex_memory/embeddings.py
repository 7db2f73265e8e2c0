"""
Embedding providers: turn fragment text and queries into unit vectors.

The rest of the package only talks to :class:`EmbeddingProvider`.  The
concrete model integration is :class:`SentenceTransformerProvider`, which
loads a sentence-transformers model through ChromaDB's embedding-function
wrapper the first time it is needed and keeps it for the lifetime of the
process.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MODEL_NAME: str = "BAAI/bge-small-en-v1.5"
DEFAULT_DIMENSION: int = 384

#: Prefixes distinguishing stored content from search queries.
PASSAGE_PREFIX: str = "passage: "
QUERY_PREFIX: str = "query: "


class ProviderUnavailable(RuntimeError):
    """Raised when the embedding model cannot be loaded or invoked."""

    def __init__(self, model_name: str, message: str) -> None:
        super().__init__(f"{model_name}: {message}")
        self.model_name = model_name
        self.message = message


class ProviderState(enum.Enum):
    NOT_INITIALIZED = "not_initialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


def normalize_vector(vector: Any) -> np.ndarray:
    """Return *vector* as a float32 array scaled to unit length."""
    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(array))
    if norm <= 0.0:
        return array
    return array / norm


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class EmbeddingProvider(ABC):
    """
    Capability interface for turning text into fixed-dimension vectors.

    Passages (content to be stored) and queries may be encoded differently,
    but both modes share one dimension and one similarity space.  Every
    returned vector is unit-normalized.
    """

    model_name: str
    dimension: int

    @abstractmethod
    def embed_passages(self, texts: Sequence[str]) -> list[np.ndarray]:
        """Embed stored content, one vector per text, in input order."""

    @abstractmethod
    def embed_query(self, text: str) -> np.ndarray:
        """Embed a search query."""


# ---------------------------------------------------------------------------
# sentence-transformers adapter
# ---------------------------------------------------------------------------


def get_embedding_function(model_name: str = DEFAULT_MODEL_NAME) -> Any:
    """Return a sentence-transformer embedding function (loads the model)."""
    from chromadb.utils import embedding_functions

    return embedding_functions.SentenceTransformerEmbeddingFunction(
        model_name=model_name,
        normalize_embeddings=True,
    )


class SentenceTransformerProvider(EmbeddingProvider):
    """
    Local sentence-transformers model behind the :class:`EmbeddingProvider`
    interface.

    The model is loaded lazily on the first embedding call.  A failed load
    leaves the provider in ``FAILED``; the next call retries the load.

    Parameters
    ----------
    model_name:
        HuggingFace sentence-transformers model identifier.
    dimension:
        Expected vector dimension.  Vectors of any other length are
        rejected with :class:`ProviderUnavailable`.
    _embedding_function:
        Pre-built callable mapping ``list[str]`` to vectors.  Used by tests
        to avoid downloading a model.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL_NAME,
        dimension: int = DEFAULT_DIMENSION,
        _embedding_function: Any | None = None,
    ) -> None:
        self.model_name = model_name
        self.dimension = dimension
        self._function = _embedding_function
        self.state = (
            ProviderState.READY
            if _embedding_function is not None
            else ProviderState.NOT_INITIALIZED
        )
        self.last_error: str | None = None

    def load(self) -> None:
        """Load the underlying model if it is not loaded yet."""
        if self.state is ProviderState.READY:
            return
        self.state = ProviderState.INITIALIZING
        logger.info("Loading embedding model %s", self.model_name)
        try:
            self._function = get_embedding_function(self.model_name)
        except Exception as exc:  # noqa: BLE001
            self.state = ProviderState.FAILED
            self.last_error = str(exc)
            raise ProviderUnavailable(self.model_name, str(exc)) from exc
        self.state = ProviderState.READY
        self.last_error = None

    def embed_passages(self, texts: Sequence[str]) -> list[np.ndarray]:
        if not texts:
            return []
        return self._encode([PASSAGE_PREFIX + text for text in texts])

    def embed_query(self, text: str) -> np.ndarray:
        return self._encode([QUERY_PREFIX + text])[0]

    def _encode(self, texts: list[str]) -> list[np.ndarray]:
        self.load()
        try:
            raw = self._function(texts)
        except Exception as exc:  # noqa: BLE001
            raise ProviderUnavailable(self.model_name, str(exc)) from exc

        if len(raw) != len(texts):
            raise ProviderUnavailable(
                self.model_name,
                f"expected {len(texts)} vectors, got {len(raw)}",
            )
        vectors = [normalize_vector(vector) for vector in raw]
        for vector in vectors:
            if vector.shape[0] != self.dimension:
                raise ProviderUnavailable(
                    self.model_name,
                    f"embedding dimension {vector.shape[0]} != {self.dimension}",
                )
        return vectors


# Lazy-initialised singleton so the embedding model is only loaded once.
_provider: SentenceTransformerProvider | None = None


def get_provider(
    model_name: str = DEFAULT_MODEL_NAME,
    dimension: int = DEFAULT_DIMENSION,
) -> SentenceTransformerProvider:
    """Return the process-wide provider, creating it on first use."""
    global _provider
    if (
        _provider is None
        or _provider.model_name != model_name
        or _provider.dimension != dimension
    ):
        _provider = SentenceTransformerProvider(model_name=model_name, dimension=dimension)
    return _provider


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelStatus:
    success: bool
    model: str
    dimensions: int
    error: str | None = None


def verify_model(provider: EmbeddingProvider, sample: str = "test") -> ModelStatus:
    """
    Embed *sample* once and report whether the provider works.

    Never raises: a broken provider is reported as ``success=False`` with
    the error message.
    """
    try:
        vectors = provider.embed_passages([sample])
    except ProviderUnavailable as exc:
        logger.warning("Embedding model %s unavailable: %s", provider.model_name, exc.message)
        return ModelStatus(
            success=False,
            model=provider.model_name,
            dimensions=provider.dimension,
            error=exc.message,
        )
    return ModelStatus(
        success=True,
        model=provider.model_name,
        dimensions=int(vectors[0].shape[0]),
    )
