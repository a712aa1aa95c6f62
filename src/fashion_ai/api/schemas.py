from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class PredictionItem:
    label: str
    probability: float
    index: int


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    predictions: list[PredictionItem]
    label: str
    confidence: float
    probs: list[float]
    model_id: str
    uncertain: bool
    share_text: str | None
    visual_png_b64: str | None
    latency_ms: int


@pydantic_dataclass(frozen=True)
class HistoryItem:
    label: str
    probability: float
    image_ref: str
    timestamp: str


@pydantic_dataclass(frozen=True)
class HistoryResponse:
    capacity: int
    entries: list[HistoryItem]
