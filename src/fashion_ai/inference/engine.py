from __future__ import annotations

import json
import os
import pickle
import threading
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import torch
from torch import Tensor

from ..config import ResizePolicy, Settings
from ..errors import AppError, ErrorCode, app_error
from ..logging import get_logger
from ..preprocess import IMAGE_SIZE, preprocess_signature
from .manifest import ModelManifest
from .model import TorchModel, build_model, validate_state_dict
from .ranking import FASHION_CLASSES
from .types import PredictOutput

_N_CLASSES: Final[int] = len(FASHION_CLASSES)
_INPUT_SHAPE: Final[tuple[int, int, int, int]] = (1, IMAGE_SIZE, IMAGE_SIZE, 1)
_PROB_SUM_TOLERANCE: Final[float] = 1e-3
_MANIFEST_FILE: Final[str] = "manifest.json"
_WEIGHTS_FILE: Final[str] = "model.pt"
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)

@dataclass(frozen=True)
class LoadedModel:
    model: TorchModel
    manifest: ModelManifest


class InferenceEngine:
    """Owns the classifier and runs it on a bounded thread pool.

    The model is installed once, normally at startup through
    ``try_load_active``, and is read-only afterwards.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._pool = _make_pool(settings)
        self._install_lock = threading.Lock()
        self._model: TorchModel | None = None
        self._manifest: ModelManifest | None = None
        torch.set_num_threads(1)

    @property
    def ready(self) -> bool:
        return self._model is not None and self._manifest is not None

    @property
    def model_id(self) -> str | None:
        return self._manifest.model_id if self._manifest is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    def install(self, model: TorchModel, manifest: ModelManifest) -> None:
        with self._install_lock:
            if self._model is not None:
                raise RuntimeError("model already installed")
            model.eval()
            self._manifest = manifest
            self._model = model

    def try_load_active(self) -> bool:
        """Load the configured active model; log and stay not-ready on failure."""
        cfg = self._settings.classifier
        model_dir = cfg.model_dir / cfg.active_model
        try:
            loaded = load_model(model_dir, cfg.resize_policy)
        except AppError as exc:
            self._logger.warning(
                "model_load_failed model_dir=%s reason=%s", model_dir.as_posix(), exc.message
            )
            return False
        self.install(loaded.model, loaded.manifest)
        self._logger.info(
            "model_loaded model_id=%s arch=%s", loaded.manifest.model_id, loaded.manifest.arch
        )
        return True

    def submit_predict(self, preprocessed: Tensor) -> Future[PredictOutput]:
        return self._pool.submit(self.infer, preprocessed)

    def infer(self, preprocessed: Tensor) -> PredictOutput:
        man = self._manifest
        model_obj = self._model
        if man is None or model_obj is None:
            raise app_error(ErrorCode.model_not_loaded)

        batch = _as_input_batch(preprocessed)
        # Every tensor created here is local and no autograd graph is recorded,
        # so nothing outlives the call on success or failure.
        try:
            with torch.no_grad():
                out = model_obj(batch)
                probs = _as_probabilities(out)
        except AppError:
            raise
        except Exception as exc:
            raise app_error(ErrorCode.inference_failed, f"model call failed: {exc}") from exc

        total = sum(probs)
        if abs(total - 1.0) > _PROB_SUM_TOLERANCE:
            self._logger.warning("probability_sum_off sum=%.6f model_id=%s", total, man.model_id)
        return PredictOutput(probs=probs, model_id=man.model_id)

    def warmup(self) -> PredictOutput:
        """Run an all-zeros input through the model as a load-time self check."""
        out = self.infer(torch.zeros(_INPUT_SHAPE, dtype=torch.float32))
        self._logger.info("model_warmup n_probs=%d model_id=%s", len(out.probs), out.model_id)
        return out

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


def _as_input_batch(x: Tensor) -> Tensor:
    if not isinstance(x, Tensor):
        raise app_error(ErrorCode.inference_failed, "input is not a tensor")
    t = x
    if t.ndim == 3:
        # Expect 28x28x1 -> add batch
        t = t.unsqueeze(0)
    if tuple(int(d) for d in t.shape) != _INPUT_SHAPE:
        raise app_error(
            ErrorCode.inference_failed,
            f"expected input shape {list(_INPUT_SHAPE)}, got {list(x.shape)}",
        )
    return t.to(dtype=torch.float32)


def _as_probabilities(out: object) -> tuple[float, ...]:
    if not isinstance(out, Tensor):
        raise app_error(ErrorCode.inference_failed, "model returned a non-tensor output")
    vec = out[0] if out.ndim == 2 and int(out.shape[0]) == 1 else out
    if vec.ndim != 1 or int(vec.shape[0]) != _N_CLASSES:
        raise app_error(
            ErrorCode.inference_failed,
            f"expected {_N_CLASSES} probabilities, got shape {list(out.shape)}",
        )
    vals = vec.to(dtype=torch.float64)
    if not bool(torch.isfinite(vals).all()):
        raise app_error(ErrorCode.inference_failed, "model returned non-finite values")
    if bool((vals < 0.0).any()) or bool((vals > 1.0).any()):
        raise app_error(ErrorCode.inference_failed, "model output is not a probability vector")
    return tuple(float(v) for v in vals.tolist())


def load_model(model_dir: Path, resize_policy: ResizePolicy = "bilinear") -> LoadedModel:
    """Load ``manifest.json`` and ``model.pt`` from ``model_dir``.

    Raises ``AppError(model_load_failed)`` when the artifacts are missing,
    unreadable, built for another preprocessing transform or category table,
    or do not fit the declared architecture.
    """
    manifest_path = model_dir / _MANIFEST_FILE
    model_path = model_dir / _WEIGHTS_FILE
    if not (manifest_path.exists() and model_path.exists()):
        raise app_error(ErrorCode.model_load_failed, f"model artifacts not found in {model_dir}")
    try:
        manifest = ModelManifest.from_path(manifest_path)
    except (OSError, ValueError) as exc:
        raise app_error(ErrorCode.model_load_failed, f"invalid manifest: {exc}") from exc
    if manifest.n_classes != _N_CLASSES:
        raise app_error(
            ErrorCode.model_load_failed,
            f"model has {manifest.n_classes} classes, expected {_N_CLASSES}",
        )
    if manifest.preprocess_hash != preprocess_signature(resize_policy):
        raise app_error(ErrorCode.model_load_failed, "preprocess signature mismatch")
    try:
        model = build_model(arch=manifest.arch, n_classes=manifest.n_classes)
    except ValueError as exc:
        raise app_error(ErrorCode.model_load_failed, str(exc)) from exc
    try:
        sd = _load_state_dict_file(model_path)
    except _LOAD_ERRORS as exc:
        raise app_error(ErrorCode.model_load_failed, f"unreadable weights: {exc}") from exc
    try:
        validate_state_dict(sd, manifest.arch, manifest.n_classes)
        model.load_state_dict(sd)
    except (ValueError, RuntimeError) as exc:
        raise app_error(ErrorCode.model_load_failed, f"invalid weights: {exc}") from exc
    model.eval()
    return LoadedModel(model=model, manifest=manifest)


def write_model_artifacts(
    model_dir: Path, state_dict: dict[str, Tensor], manifest: ModelManifest
) -> None:
    model_dir.mkdir(parents=True, exist_ok=True)
    torch.save(state_dict, (model_dir / _WEIGHTS_FILE).as_posix())
    (model_dir / _MANIFEST_FILE).write_text(
        json.dumps(manifest.to_dict(), indent=2), encoding="utf-8"
    )


def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
    obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
    sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
    if not isinstance(sd_obj, dict):
        raise ValueError("state dict file did not contain a dict")
    out: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if isinstance(k, str) and torch.is_tensor(v):
            out[k] = v
        else:
            raise ValueError("invalid state dict entry")
    return out
