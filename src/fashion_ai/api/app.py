from __future__ import annotations

import base64
import hashlib
import io
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Final

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, app_error, new_error
from ..history import PredictionHistory
from ..inference.engine import InferenceEngine
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..pipeline import ClassificationResult, ClassifierPipeline
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ClassifyResponse, HistoryResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False

_UPLOAD_FIELD: Final[str] = "file"


async def _on_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if isinstance(exc, AppError):
        return JSONResponse(status_code=exc.http_status, content=exc.response(rid).to_dict())
    return await _on_unexpected(_, exc)


async def _on_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__, exc_info=exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _start_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    if not engine.try_load_active():
        return engine
    try:
        engine.warmup()
    except AppError as exc:
        get_logger().warning("model_warmup_failed reason=%s", exc.message)
    return engine


class UploadReader:
    """Checks a multipart upload against the request limits and decodes it."""

    def __init__(self, limits: Limits) -> None:
        self._limits = limits

    async def read(self, request: Request, file: UploadFile) -> tuple[bytes, Image.Image]:
        form = await request.form()
        extra = [k for k in form if k != _UPLOAD_FIELD]
        if extra:
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
        if len(form.getlist(_UPLOAD_FIELD)) != 1:
            raise app_error(ErrorCode.malformed_multipart, "Exactly one file part is required")
        if not (file.content_type or "").lower().startswith("image/"):
            raise app_error(ErrorCode.unsupported_media_type)

        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self._limits.max_bytes:
            raise app_error(ErrorCode.too_large, "Request body too large")
        raw = await file.read()
        if len(raw) > self._limits.max_bytes:
            raise app_error(ErrorCode.too_large)
        return raw, self.decode(raw)

    def decode(self, raw: bytes) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(raw))
            # Only the header has been parsed at this point
            if max(img.size) > self._limits.max_side_px:
                raise app_error(ErrorCode.bad_dimensions)
            img.load()
        except UnidentifiedImageError:
            raise app_error(ErrorCode.invalid_image) from None
        except Image.DecompressionBombError:
            raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
        except OSError:
            raise app_error(ErrorCode.invalid_image, "Corrupt or truncated image") from None
        return img


def image_ref(raw: bytes) -> str:
    return "sha256:" + hashlib.sha256(raw).hexdigest()[:16]


def _classify_body(res: ClassificationResult) -> dict[str, object]:
    return {
        "predictions": [
            {"label": p.label, "probability": p.probability, "index": p.index}
            for p in res.predictions
        ],
        "label": res.top.label,
        "confidence": res.top.probability,
        "probs": list(res.probs),
        "model_id": res.model_id,
        "uncertain": res.uncertain,
        "share_text": res.share_text,
        "visual_png_b64": (
            base64.b64encode(res.visual_png).decode("ascii") if res.visual_png else None
        ),
        "latency_ms": res.latency_ms,
    }


def _add_status_routes(app: FastAPI, engine: InferenceEngine) -> None:
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready", "model_id": engine.model_id}
        return {"status": "not_ready", "model_loaded": False, "model_id": None}

    async def version() -> dict[str, str | None]:
        return get_version().to_dict()

    async def active_model() -> dict[str, object]:
        man = engine.manifest
        if man is None:
            return {"model_loaded": False, "model_id": None}
        return {"model_loaded": True, **man.to_dict()}

    for path, endpoint in (
        ("/healthz", healthz),
        ("/readyz", readyz),
        ("/version", version),
        ("/v1/models/active", active_model),
    ):
        app.add_api_route(path, endpoint, methods=["GET"])


def _add_classifier_routes(
    app: FastAPI,
    guard: Callable[..., None],
    provide_pipeline: Callable[[], ClassifierPipeline],
    provide_reader: Callable[[], UploadReader],
) -> None:
    async def classify(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        visualize: bool = False,
    ) -> dict[str, object]:
        raw, img = await provide_reader().read(request, file)
        res = await run_in_threadpool(
            provide_pipeline().classify, img, image_ref(raw), visualize=visualize
        )
        return _classify_body(res)

    async def history() -> dict[str, object]:
        hist = provide_pipeline().history
        return {"capacity": hist.capacity, "entries": [e.to_dict() for e in hist.entries()]}

    deps = [Depends(guard)]
    # /v1/predict is kept as an alias of /v1/classify
    for path in ("/v1/classify", "/v1/predict"):
        app.add_api_route(
            path, classify, methods=["POST"], response_model=ClassifyResponse, dependencies=deps
        )
    app.add_api_route(
        "/v1/history", history, methods=["GET"], response_model=HistoryResponse, dependencies=deps
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
) -> FastAPI:
    """Build the classifier API.

    Settings are loaded from env/TOML when not given. ``engine_provider``
    replaces the engine that would otherwise be built and loaded from
    ``classifier.model_dir``; tests use it to inject a fixed model.
    """
    s = settings or Settings.load()
    init_logging()
    engine = engine_provider() if engine_provider is not None else _start_engine(s)
    pipeline = ClassifierPipeline(engine, PredictionHistory(s.classifier.history_size), s)
    reader = UploadReader(Limits.from_settings(s))

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        engine.shutdown()

    app = FastAPI(title="fashion-ai", lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _on_app_error)
    app.add_exception_handler(Exception, _on_unexpected)

    def provide_pipeline() -> ClassifierPipeline:
        return pipeline

    def provide_reader() -> UploadReader:
        return reader

    app.state.provide_pipeline = provide_pipeline
    app.state.provide_reader = provide_reader

    _add_status_routes(app, engine)
    _add_classifier_routes(app, api_key_dependency(s), provide_pipeline, provide_reader)
    return app
