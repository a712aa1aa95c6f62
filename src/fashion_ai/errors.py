from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, NamedTuple

from fastapi import status


class ErrorCode(str, Enum):
    # Request and image problems
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    malformed_multipart = "malformed_multipart"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    invalid_k = "invalid_k"
    unauthorized = "unauthorized"
    # Model lifecycle and inference
    model_not_loaded = "model_not_loaded"
    model_load_failed = "model_load_failed"
    inference_failed = "inference_failed"
    timeout = "timeout"
    internal_error = "internal_error"


class _CodeInfo(NamedTuple):
    http_status: int
    message: str


_CODES: Final[dict[ErrorCode, _CodeInfo]] = {
    ErrorCode.invalid_image: _CodeInfo(status.HTTP_400_BAD_REQUEST, "Failed to decode image."),
    ErrorCode.unsupported_media_type: _CodeInfo(
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "Please upload an image file."
    ),
    ErrorCode.malformed_multipart: _CodeInfo(
        status.HTTP_400_BAD_REQUEST, "Malformed multipart body."
    ),
    ErrorCode.bad_dimensions: _CodeInfo(
        status.HTTP_400_BAD_REQUEST, "Image dimensions exceed allowed limits."
    ),
    ErrorCode.too_large: _CodeInfo(
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "File exceeds size limit."
    ),
    ErrorCode.invalid_k: _CodeInfo(
        status.HTTP_400_BAD_REQUEST, "Requested number of predictions is out of range."
    ),
    ErrorCode.unauthorized: _CodeInfo(status.HTTP_401_UNAUTHORIZED, "Unauthorized."),
    ErrorCode.model_not_loaded: _CodeInfo(
        status.HTTP_503_SERVICE_UNAVAILABLE, "Model not loaded."
    ),
    ErrorCode.model_load_failed: _CodeInfo(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to load model."
    ),
    ErrorCode.inference_failed: _CodeInfo(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Inference failed."
    ),
    ErrorCode.timeout: _CodeInfo(status.HTTP_504_GATEWAY_TIMEOUT, "Request timed out."),
}
_FALLBACK: Final[_CodeInfo] = _CodeInfo(
    status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error."
)


@dataclass(frozen=True)
class ErrorResponse:
    """JSON error body returned for every failed request."""

    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message, "request_id": self.request_id}


class AppError(Exception):
    """A failure that maps onto a stable error code and HTTP status."""

    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message

    def response(self, request_id: str) -> ErrorResponse:
        return ErrorResponse(code=self.code, message=self.message, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    return _CODES.get(code, _FALLBACK).http_status


def default_message(code: ErrorCode) -> str:
    return _CODES.get(code, _FALLBACK).message


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    return AppError(code, status_for(code), message or default_message(code))


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message or default_message(code)
    return ErrorResponse(code=code, message=msg, request_id=request_id)
