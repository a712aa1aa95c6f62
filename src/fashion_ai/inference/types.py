from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from torch import Tensor


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # [1, 28, 28, 1] float32 in [0, 1]
    visual_png: bytes | None


@dataclass(frozen=True)
class PredictOutput:
    probs: tuple[float, ...]  # length 10, indexed by class
    model_id: str


@dataclass(frozen=True)
class ClassPrediction:
    label: str
    probability: float
    index: int


RankedPredictions = tuple[ClassPrediction, ...]

Probs = Sequence[float]
