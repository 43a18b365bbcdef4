"""Dense embeddings for chunks and queries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from sentence_transformers import SentenceTransformer

from .config import Settings

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[... utelatt tekst ...]\n\n"
HEAD_RATIO = 0.9


def truncate_for_embedding(text: str, max_chars: int) -> str:
    """
    Head+tail truncate text that exceeds ``max_chars``.

    Keeps ~90% of the budget from the start and ~10% from the end, with an
    explicit marker spliced between. The result never exceeds ``max_chars``.
    """
    if len(text) <= max_chars:
        return text
    budget = max_chars - len(TRUNCATION_MARKER)
    if budget <= 0:
        return text[:max_chars]
    head_len = int(budget * HEAD_RATIO)
    tail_len = budget - head_len
    tail = text[-tail_len:] if tail_len > 0 else ""
    return f"{text[:head_len]}{TRUNCATION_MARKER}{tail}"


class EmbeddingService:
    """Wraps a SentenceTransformer model behind async embed calls.

    Encoding runs in a worker thread so the event loop stays responsive.
    """

    def __init__(self, settings: Settings, model: Any | None = None):
        """
        Initialize the embedding service.

        Args:
            settings: Application settings
            model: Preloaded encoder exposing ``encode`` (loads settings.embedding_model_name if None)

        Raises:
            ValueError: If embedding model cannot be loaded
        """
        self.settings = settings
        if model is not None:
            self.model = model
            return
        try:
            logger.info(f"Loading embedding model: {settings.embedding_model_name}")
            self.model = SentenceTransformer(settings.embedding_model_name, device="cpu")
            logger.info("Embedding model loaded successfully")
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise ValueError(f"Cannot load embedding model: {e}") from e

    @property
    def dimension(self) -> int:
        return self.settings.embedding_dimension

    def _prepare(self, text: str) -> str:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return truncate_for_embedding(text, self.settings.embedding_max_chars)

    def _encode(self, texts: list[str]) -> list[list[float]]:
        vectors = self.model.encode(
            texts,
            batch_size=self.settings.embedding_batch_size,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        if hasattr(vectors, "tolist"):
            vectors = vectors.tolist()
        return [list(map(float, vector)) for vector in vectors]

    async def embed(self, text: str) -> list[float]:
        """Embed a single text (query or chunk)."""
        vectors = await asyncio.to_thread(self._encode, [self._prepare(text)])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in batches of ``embedding_batch_size``, preserving order."""
        prepared = [self._prepare(text) for text in texts]
        embeddings: list[list[float]] = []
        batch_size = self.settings.embedding_batch_size
        for start in range(0, len(prepared), batch_size):
            batch = prepared[start : start + batch_size]
            embeddings.extend(await asyncio.to_thread(self._encode, batch))
        return embeddings
