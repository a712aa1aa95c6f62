from __future__ import annotations

from collections.abc import Sequence
from typing import Final

from ..errors import ErrorCode, app_error
from .types import ClassPrediction, Probs, RankedPredictions

FASHION_CLASSES: Final[tuple[str, ...]] = (
    "T-shirt/Top",
    "Trouser",
    "Pullover",
    "Dress",
    "Coat",
    "Sandal",
    "Shirt",
    "Sneaker",
    "Bag",
    "Ankle Boot",
)
DEFAULT_TOP_K: Final[int] = 3


def rank(
    probabilities: Probs,
    labels: Sequence[str] = FASHION_CLASSES,
    k: int = DEFAULT_TOP_K,
) -> RankedPredictions:
    """Return the ``k`` most probable classes, highest first.

    Equal probabilities keep class-index order, so the lower index wins a tie.
    """
    n = len(probabilities)
    if n != len(labels):
        raise app_error(
            ErrorCode.inference_failed,
            f"expected {len(labels)} probabilities, got {n}",
        )
    if k <= 0 or k > n:
        raise app_error(ErrorCode.invalid_k, f"k must be within [1, {n}], got {k}")
    order = sorted(range(n), key=lambda i: -float(probabilities[i]))
    return tuple(
        ClassPrediction(label=labels[i], probability=float(probabilities[i]), index=i)
        for i in order[:k]
    )
