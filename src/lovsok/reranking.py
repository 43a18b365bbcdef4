"""Cross-encoder reranking of fused search candidates.

Reranking is a pure reordering step: it never drops a candidate, and any
provider failure leaves the input order untouched.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, TypeVar

from sentence_transformers import CrossEncoder

from .config import Settings
from .timing import Timer

logger = logging.getLogger(__name__)

T = TypeVar("T")


def sigmoid(x: float) -> float:
    """Numerically safe sigmoid used for reranker logit normalization."""
    try:
        return 1.0 / (1.0 + math.exp(-x))
    except OverflowError:
        return 0.0


def normalize_score(raw: Any) -> Optional[float]:
    """Map a raw logit to [0, 1]; missing or non-finite values become None."""
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return sigmoid(value)


@dataclass
class RerankCandidate:
    """One candidate as seen by the reranker."""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: Optional[float] = None


def apply_rerank_scores(items: Sequence[T], scores: Sequence[Optional[float]]) -> list[tuple[T, Optional[float]]]:
    """
    Order items by descending score.

    Scored items come first (ties keep input order). Items without a score
    follow in their original relative order.

    Raises:
        ValueError: If ``scores`` and ``items`` differ in length
    """
    if len(scores) != len(items):
        raise ValueError(f"Score count mismatch: {len(scores)} scores for {len(items)} items")
    scored = [(item, score) for item, score in zip(items, scores) if score is not None]
    unscored = [(item, None) for item, score in zip(items, scores) if score is None]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored + unscored


class Reranker:
    """Scores (query, text) pairs with a cross-encoder and reorders candidates."""

    def __init__(self, settings: Settings, model: Any | None = None):
        """
        Initialize the reranker.

        Args:
            settings: Application settings
            model: Preloaded model exposing ``predict(pairs)`` (loads settings.reranker_model if None)

        Raises:
            ValueError: If the reranker model cannot be loaded
        """
        self.settings = settings
        if model is not None:
            self.model = model
            return
        try:
            logger.info(f"Loading reranker model: {settings.reranker_model}")
            self.model = CrossEncoder(settings.reranker_model)
            logger.info("Reranker loaded successfully")
        except Exception as e:
            raise ValueError(f"Cannot load reranker model: {e}") from e

    def _predict(self, pairs: list[list[str]]) -> list[Any]:
        raw_scores = self.model.predict(pairs)
        if hasattr(raw_scores, "tolist"):
            raw_scores = raw_scores.tolist()
        if isinstance(raw_scores, (int, float)):
            return [raw_scores]
        return list(raw_scores)

    async def rerank(
        self,
        query: str,
        candidates: Sequence[RerankCandidate],
        top_n: int | None = None,
    ) -> list[RerankCandidate]:
        """
        Rerank candidates against the query.

        Only the first ``top_n`` candidates (capped by reranker_max_candidates)
        with non-empty text are sent to the model. Unscored candidates keep
        their relative order after the scored ones.

        Args:
            query: User query
            candidates: Candidates in fused order
            top_n: Number of leading candidates to score (all if None)

        Returns:
            All candidates, reordered; the input order on any failure
        """
        candidates = list(candidates)
        if not query or not query.strip() or not candidates:
            return candidates

        limit = min(top_n or len(candidates), self.settings.reranker_max_candidates)
        scorable = [
            position
            for position, candidate in enumerate(candidates[:limit])
            if candidate.text and candidate.text.strip()
        ]
        if not scorable:
            return candidates

        pairs = [[query, candidates[position].text] for position in scorable]
        timer = Timer("rerank", logger, {"candidates": len(pairs)})
        try:
            raw_scores = await asyncio.wait_for(
                asyncio.to_thread(self._predict, pairs),
                timeout=self.settings.reranker_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Reranking timed out, returning original order")
            return candidates
        except Exception as exc:
            logger.warning("Reranking failed, returning original order: %s", exc)
            return candidates

        if len(raw_scores) != len(pairs):
            logger.warning(
                "Score count mismatch: %s scores for %s docs, returning original order",
                len(raw_scores),
                len(pairs),
            )
            return candidates

        scores: list[Optional[float]] = [None] * len(candidates)
        for position, raw in zip(scorable, raw_scores):
            scores[position] = normalize_score(raw)

        ordered = apply_rerank_scores(candidates, scores)
        timer.end(scored=sum(score is not None for score in scores))
        result = []
        for candidate, score in ordered:
            candidate.score = score
            result.append(candidate)
        return result
