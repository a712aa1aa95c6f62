from __future__ import annotations

import pytest

from fashion_ai.errors import AppError, ErrorCode
from fashion_ai.inference.ranking import FASHION_CLASSES, rank


def _pairs(probs: list[float], k: int = 3) -> list[tuple[str, float]]:
    return [(p.label, p.probability) for p in rank(probs, FASHION_CLASSES, k)]


def test_category_table_order() -> None:
    assert len(FASHION_CLASSES) == 10
    assert FASHION_CLASSES[0] == "T-shirt/Top"
    assert FASHION_CLASSES[3] == "Dress"
    assert FASHION_CLASSES[9] == "Ankle Boot"


def test_rank_top3_dress_sneaker_tshirt() -> None:
    probs = [0.05, 0.02, 0.01, 0.60, 0.02, 0.02, 0.03, 0.20, 0.03, 0.02]
    assert _pairs(probs) == [("Dress", 0.60), ("Sneaker", 0.20), ("T-shirt/Top", 0.05)]


def test_rank_one_hot_breaks_ties_by_index() -> None:
    probs = [0.0] * 9 + [1.0]
    assert _pairs(probs) == [("Ankle Boot", 1.0), ("T-shirt/Top", 0.0), ("Trouser", 0.0)]


def test_equal_probabilities_keep_lower_index_first() -> None:
    probs = [0.0, 0.0, 0.0, 0.0, 0.3, 0.0, 0.3, 0.0, 0.4, 0.0]
    ranked = rank(probs)
    assert [p.index for p in ranked] == [8, 4, 6]


def test_rank_is_sorted_and_deterministic() -> None:
    probs = [0.11, 0.07, 0.15, 0.09, 0.13, 0.05, 0.12, 0.08, 0.1, 0.1]
    first = rank(probs)
    assert len(first) == 3
    values = [p.probability for p in first]
    assert values == sorted(values, reverse=True)
    assert rank(probs) == first


def test_default_k_and_full_ranking() -> None:
    probs = [0.1] * 10
    assert len(rank(probs)) == 3
    full = rank(probs, k=10)
    assert [p.index for p in full] == list(range(10))


@pytest.mark.parametrize("k", [0, -1, 11])
def test_invalid_k_rejected(k: int) -> None:
    with pytest.raises(AppError) as ei:
        rank([0.1] * 10, FASHION_CLASSES, k)
    assert ei.value.code is ErrorCode.invalid_k


def test_length_mismatch_rejected() -> None:
    with pytest.raises(AppError) as ei:
        rank([0.5, 0.5], FASHION_CLASSES, 1)
    assert ei.value.code is ErrorCode.inference_failed
