"""Embedding providers: text → fixed-length vector."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Optional, Protocol, Tuple

from mcp_vector_proxy.config.schema import EmbeddingSettings

logger = logging.getLogger(__name__)

Vector = Tuple[float, ...]


class EmbeddingProvider(Protocol):
    """Anything that can turn text into a dense vector.

    Implementations may be slow and may fail; callers treat failures as
    transient.
    """

    async def load(self) -> None: ...

    async def embed(self, text: str) -> Vector: ...


class SentenceTransformerProvider:
    """Local sentence-transformers model (mean-pooled, L2-normalised).

    The model is loaded once, and every encode call runs in a worker thread
    so the event loop keeps serving requests.

    Parameters
    ----------
    settings:
        Model name, cache directory and optional torch device.
    """

    def __init__(self, settings: EmbeddingSettings) -> None:
        self._settings = settings
        self._model: Optional[Any] = None
        self._load_lock = asyncio.Lock()

    def _load_sync(self) -> Any:
        from sentence_transformers import SentenceTransformer

        cache_dir = os.path.abspath(self._settings.cache_dir)
        os.makedirs(cache_dir, exist_ok=True)
        logger.info("Loading embedding model: %s (cache: %s)", self._settings.model, cache_dir)
        model = SentenceTransformer(
            self._settings.model,
            cache_folder=cache_dir,
            device=self._settings.device,
        )
        logger.info("Embedding model loaded (dim=%s).", model.get_sentence_embedding_dimension())
        return model

    async def load(self) -> None:
        """Load the model once; concurrent callers wait for the same load."""
        async with self._load_lock:
            if self._model is None:
                self._model = await asyncio.to_thread(self._load_sync)

    async def embed(self, text: str) -> Vector:
        if self._model is None:
            await self.load()
        model = self._model
        vector = await asyncio.to_thread(
            model.encode,  # type: ignore[union-attr]
            text,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return tuple(float(x) for x in vector.tolist())
