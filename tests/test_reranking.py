"""Tests for cross-encoder reranking."""

import time
from unittest.mock import Mock

import pytest

from lovsok.reranking import (
    RerankCandidate,
    Reranker,
    apply_rerank_scores,
    normalize_score,
    sigmoid,
)


def candidates(count=3):
    return [RerankCandidate(id=f"doc-{i}", text=f"Tekst {i}") for i in range(count)]


def ids(items):
    return [item.id for item in items]


def test_sigmoid_bounds():
    assert sigmoid(0) == pytest.approx(0.5)
    assert sigmoid(-1000) == 0.0
    assert sigmoid(1000) == pytest.approx(1.0)


def test_normalize_score_rejects_missing_values():
    assert normalize_score(None) is None
    assert normalize_score(float("nan")) is None
    assert normalize_score(float("inf")) is None
    assert normalize_score("not a number") is None
    assert normalize_score(0) == pytest.approx(0.5)


def test_apply_rerank_scores_sinks_unscored_items():
    """Unscored items follow the scored ones in their original order."""
    ordered = apply_rerank_scores(["a", "b", "c", "d"], [0.1, None, 0.9, None])
    assert ordered == [("c", 0.9), ("a", 0.1), ("b", None), ("d", None)]


def test_apply_rerank_scores_length_mismatch():
    with pytest.raises(ValueError):
        apply_rerank_scores(["a", "b"], [0.5])


def test_reranker_load_failure_raises(mock_settings):
    with pytest.raises(ValueError):
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("lovsok.reranking.CrossEncoder", Mock(side_effect=OSError("no model")))
            Reranker(mock_settings)


@pytest.mark.asyncio
async def test_rerank_orders_by_score(mock_settings):
    model = Mock()
    model.predict.return_value = [0.1, 2.0, -1.0]
    reranker = Reranker(mock_settings, model=model)

    result = await reranker.rerank("depositum", candidates())

    assert ids(result) == ["doc-1", "doc-0", "doc-2"]
    assert result[0].score == pytest.approx(sigmoid(2.0))
    model.predict.assert_called_once_with(
        [["depositum", "Tekst 0"], ["depositum", "Tekst 1"], ["depositum", "Tekst 2"]]
    )


@pytest.mark.asyncio
async def test_rerank_provider_error_keeps_order(mock_settings):
    model = Mock()
    model.predict.side_effect = RuntimeError("quota exceeded")
    reranker = Reranker(mock_settings, model=model)

    result = await reranker.rerank("depositum", candidates())

    assert ids(result) == ["doc-0", "doc-1", "doc-2"]
    assert all(item.score is None for item in result)


@pytest.mark.asyncio
async def test_rerank_score_count_mismatch_keeps_order(mock_settings):
    model = Mock()
    model.predict.return_value = [0.5]
    reranker = Reranker(mock_settings, model=model)

    result = await reranker.rerank("depositum", candidates())
    assert ids(result) == ["doc-0", "doc-1", "doc-2"]


@pytest.mark.asyncio
async def test_rerank_timeout_keeps_order(mock_settings):
    mock_settings.reranker_timeout_seconds = 0.05
    model = Mock()

    def slow_predict(pairs):
        time.sleep(0.3)
        return [1.0] * len(pairs)

    model.predict.side_effect = slow_predict
    reranker = Reranker(mock_settings, model=model)

    result = await reranker.rerank("depositum", candidates())
    assert ids(result) == ["doc-0", "doc-1", "doc-2"]


@pytest.mark.asyncio
async def test_rerank_empty_query_or_candidates(mock_settings):
    model = Mock()
    reranker = Reranker(mock_settings, model=model)

    assert ids(await reranker.rerank("  ", candidates())) == ["doc-0", "doc-1", "doc-2"]
    assert await reranker.rerank("depositum", []) == []
    model.predict.assert_not_called()


@pytest.mark.asyncio
async def test_rerank_never_drops_candidates(mock_settings):
    """Candidates beyond top_n or without text are kept after the scored ones."""
    model = Mock()
    model.predict.return_value = [-1.0, 1.0]
    reranker = Reranker(mock_settings, model=model)
    items = candidates(4)
    items[2].text = ""

    result = await reranker.rerank("depositum", items, top_n=3)

    assert ids(result) == ["doc-1", "doc-0", "doc-2", "doc-3"]
    assert result[2].score is None
    assert result[3].score is None
