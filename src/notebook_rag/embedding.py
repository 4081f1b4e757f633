"""Embedding engine: the single owner of the sentence-transformers model."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

import numpy as np

from .errors import EmbeddingFailure, EmbeddingModelUnavailable

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 32


class Encoder(Protocol):
    """The part of the SentenceTransformer API the engine relies on."""

    def encode(self, sentences: Any, **kwargs: Any) -> Any:
        ...

    def get_sentence_embedding_dimension(self) -> Optional[int]:
        ...


def _load_model(name: str, cache_dir: Path) -> Encoder:
    from sentence_transformers import SentenceTransformer

    logger.info("Loading embedding model %s (cache: %s)", name, cache_dir)
    return SentenceTransformer(name, cache_folder=str(cache_dir))


class EmbeddingEngine:
    """Turns text into fixed-dimension, L2-normalised float32 vectors.

    The model is not safe for concurrent use, so the engine owns a
    single-worker executor and every call (query or batch) is one work item on
    it. Callers never touch the model directly; a query issued while a large
    ingestion batch is running simply queues behind it.

    Args:
        model: Loaded encoder. Use :meth:`load` to build one from a model name.
        model_name: Identifier recorded in the vector index schema.
        batch_size: Number of texts encoded per model call in :meth:`embed_many`.
    """

    def __init__(
        self,
        model: Encoder,
        model_name: str = "custom",
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        dim = model.get_sentence_embedding_dimension()
        if not dim:
            raise EmbeddingModelUnavailable(
                f"Embedding model {model_name} does not report a fixed dimension"
            )
        self.model_name = model_name
        self.dim = int(dim)
        self.batch_size = batch_size
        self._model = model
        self._slot = ThreadPoolExecutor(max_workers=1, thread_name_prefix="embedding")

    @classmethod
    def load(
        cls,
        model_name: str,
        cache_dir: Path,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> "EmbeddingEngine":
        cache_dir.mkdir(parents=True, exist_ok=True)
        try:
            model = _load_model(model_name, cache_dir)
        except Exception as exc:
            raise EmbeddingModelUnavailable(
                f"Failed to initialize embedding model {model_name}"
            ) from exc
        return cls(model, model_name=model_name, batch_size=batch_size)

    async def embed_one(self, text: str) -> np.ndarray:
        """Embed a single query string. Returns a vector of shape (dim,)."""
        vectors = await self._submit([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        """Embed a batch of chunks. Returns an array of shape (len(texts), dim).

        The input is encoded in fixed-size batches to bound peak memory; output
        rows follow input order. A failure in any batch fails the whole call.
        """
        if not texts:
            return np.empty((0, self.dim), dtype="float32")
        return await self._submit(list(texts))

    async def _submit(self, texts: list[str]) -> np.ndarray:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._slot, self._encode, texts)

    def _encode(self, texts: list[str]) -> np.ndarray:
        parts = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            try:
                encoded = self._model.encode(
                    batch,
                    batch_size=self.batch_size,
                    convert_to_numpy=True,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
            except Exception as exc:
                raise EmbeddingFailure(
                    f"Embedding batch starting at text {start} failed"
                ) from exc
            parts.append(self._check(np.asarray(encoded, dtype="float32"), len(batch)))
        return np.vstack(parts)

    def _check(self, vectors: np.ndarray, expected: int) -> np.ndarray:
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        if vectors.shape != (expected, self.dim):
            raise EmbeddingFailure(
                f"Embedding model returned shape {vectors.shape}, expected ({expected}, {self.dim})"
            )
        if not np.all(np.isfinite(vectors)):
            raise EmbeddingFailure("Embedding model returned non-finite values")
        return vectors

    def close(self) -> None:
        self._slot.shutdown(wait=True)

    def info(self) -> dict:
        return {"model_name": self.model_name, "dimension": self.dim}


__all__ = ["EmbeddingEngine", "Encoder", "DEFAULT_BATCH_SIZE"]
