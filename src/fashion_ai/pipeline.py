from __future__ import annotations

import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Final

from PIL import Image

from .config import Settings
from .errors import ErrorCode, app_error
from .history import PredictionHistory
from .inference.engine import InferenceEngine
from .inference.ranking import FASHION_CLASSES, rank
from .inference.types import ClassPrediction, RankedPredictions
from .logging import log_event
from .preprocess import PreprocessOptions, run_preprocess

_SHARE_TEMPLATE: Final[str] = (
    "I found a {label} with {pct:.1f}% confidence using the Fashion MNIST Classifier!"
)


@dataclass(frozen=True)
class ClassificationResult:
    predictions: RankedPredictions
    probs: tuple[float, ...]
    model_id: str
    uncertain: bool
    share_text: str | None
    visual_png: bytes | None
    latency_ms: int

    @property
    def top(self) -> ClassPrediction:
        return self.predictions[0]


def share_text(prediction: ClassPrediction) -> str:
    return _SHARE_TEMPLATE.format(label=prediction.label, pct=prediction.probability * 100.0)


class ClassifierPipeline:
    """Preprocess, infer and rank one image, then record the top prediction."""

    def __init__(
        self, engine: InferenceEngine, history: PredictionHistory, settings: Settings
    ) -> None:
        self._engine = engine
        self._history = history
        self._settings = settings

    @property
    def history(self) -> PredictionHistory:
        return self._history

    def classify(
        self, img: Image.Image, image_ref: str, *, visualize: bool = False
    ) -> ClassificationResult:
        cfg = self._settings.classifier
        opts = PreprocessOptions(
            resize_policy=cfg.resize_policy,
            visualize=visualize,
            visualize_max_kb=int(cfg.visualize_max_kb),
        )
        t0 = time.perf_counter()
        pre = run_preprocess(img, opts)

        fut = self._engine.submit_predict(pre.tensor)
        try:
            out = fut.result(timeout=float(cfg.predict_timeout_seconds))
        except FutureTimeout:
            fut.cancel()
            raise app_error(ErrorCode.timeout, "Prediction timed out") from None

        ranked = rank(out.probs, FASHION_CLASSES, cfg.top_k)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        top = ranked[0]
        self._history.record(top.label, top.probability, image_ref)

        shared = share_text(top) if top.probability > cfg.share_threshold else None
        uncertain = top.probability < cfg.share_threshold
        log_event(
            "classify_finished",
            fields={
                "latency_ms": dt_ms,
                "label": top.label,
                "class_index": top.index,
                "confidence": top.probability,
                "model_id": out.model_id,
                "uncertain": uncertain,
                "history_size": len(self._history),
            },
        )
        return ClassificationResult(
            predictions=ranked,
            probs=out.probs,
            model_id=out.model_id,
            uncertain=uncertain,
            share_text=shared,
            visual_png=pre.visual_png,
            latency_ms=dt_ms,
        )
