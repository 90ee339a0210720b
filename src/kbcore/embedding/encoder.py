"""Embedding model management."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from kbcore.errors import ModelUnavailable, SchemaMismatch

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384

logger = logging.getLogger(__name__)


class ModelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    dimension: int = DEFAULT_DIMENSION
    batch_size: int = 32
    device: str | None = None
    max_attempts: int = 3
    retry_delay: float = 1.0


def load_sentence_transformer(config: EmbeddingConfig) -> SentenceTransformer:
    """Download (if needed) and load the configured model."""
    return SentenceTransformer(config.model_name, device=config.device)


class EmbeddingModel:
    """Lazily-loaded wrapper around `SentenceTransformer`.

    The model is loaded on first use, at most once per instance. Concurrent
    first calls share a single in-flight load; a failed load leaves the
    instance uninitialized so the next call starts over.

    Vectors are float32, L2-normalized and exactly ``config.dimension`` long.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        loader: Callable[[EmbeddingConfig], Any] | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self._loader = loader or load_sentence_transformer
        self._model: Any = None
        self._loading: asyncio.Task | None = None
        self.state = ModelState.UNINITIALIZED

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @property
    def is_ready(self) -> bool:
        return self.state is ModelState.READY

    async def load(self) -> Any:
        """Return the loaded model, loading it if this is the first call."""
        if self._model is not None:
            return self._model
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load_with_retry())
        # A cancelled caller must not cancel the load the others wait on
        return await asyncio.shield(self._loading)

    async def _load_with_retry(self) -> Any:
        self.state = ModelState.LOADING
        attempts = max(1, self.config.max_attempts)
        try:
            for attempt in range(1, attempts + 1):
                logger.info(
                    "Loading embedding model %s (attempt %s/%s)",
                    self.config.model_name,
                    attempt,
                    attempts,
                )
                try:
                    model = await asyncio.to_thread(self._loader, self.config)
                except Exception as exc:
                    logger.warning("Embedding model load attempt %s failed: %s", attempt, exc)
                    if attempt == attempts:
                        raise ModelUnavailable(
                            f"Could not load {self.config.model_name} after {attempts} attempts"
                        ) from exc
                    await asyncio.sleep(attempt * self.config.retry_delay)
                    continue

                self._check_dimension(model)
                self._model = model
                self.state = ModelState.READY
                logger.info("Embedding model %s ready", self.config.model_name)
                return model
        finally:
            if self._model is None:
                self.state = ModelState.UNINITIALIZED
                self._loading = None

    def _check_dimension(self, model: Any) -> None:
        get_dimension = getattr(model, "get_sentence_embedding_dimension", None)
        actual = get_dimension() if callable(get_dimension) else None
        if actual is not None and int(actual) != self.config.dimension:
            raise SchemaMismatch(
                f"Model {self.config.model_name} produces {actual}-dim vectors, "
                f"configured dimension is {self.config.dimension}"
            )

    async def embed_many(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return one normalized float32 row per input text, in input order."""
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.config.dimension), dtype="float32")

        model = await self.load()
        embeddings = await asyncio.to_thread(
            model.encode,
            sentences,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        vectors = np.atleast_2d(np.asarray(embeddings, dtype="float32"))
        if vectors.shape != (len(sentences), self.config.dimension):
            raise SchemaMismatch(
                f"Expected {len(sentences)}x{self.config.dimension} embeddings, "
                f"got {vectors.shape[0]}x{vectors.shape[1]}"
            )
        return _l2_normalize(vectors)

    async def embed(self, text: str) -> np.ndarray:
        """Embed a single text."""
        return (await self.embed_many([text]))[0]

    async def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return await self.embed(text)


def _l2_normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (vectors / norms).astype("float32", copy=False)
