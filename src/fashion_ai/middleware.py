from __future__ import annotations

import hmac
import time
import uuid
from collections.abc import Callable
from typing import Annotated, Final

from fastapi import Header
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .config import Settings
from .errors import ErrorCode, app_error
from .logging import get_logger
from .request_context import request_id_var

REQUEST_ID_HEADER: Final[str] = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of the call and log one line per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_var.set(rid)
        t0 = time.perf_counter()
        try:
            response = await call_next(request)
            get_logger().debug(
                "http_request method=%s path=%s status=%d latency_ms=%d",
                request.method,
                request.url.path,
                response.status_code,
                int((time.perf_counter() - t0) * 1000.0),
            )
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response


ApiKeyCheck = Callable[[str | None], None]


def api_key_dependency(settings: Settings) -> ApiKeyCheck:
    """Return a route dependency enforcing ``X-API-Key`` when a key is configured."""
    expected = settings.security.api_key.strip().encode("utf-8")

    def _check(x_api_key: Annotated[str | None, Header()] = None) -> None:
        if not expected:
            return
        given = (x_api_key or "").encode("utf-8")
        if not hmac.compare_digest(given, expected):
            raise app_error(ErrorCode.unauthorized)

    return _check
