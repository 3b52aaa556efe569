"""HTTP observability middleware.

- ``RequestIdMiddleware`` accepts a well-formed ``X-Request-ID`` or mints
  one, exposes it through ``request_id_ctx`` and echoes it back.
- ``MetricsMiddleware`` records Prometheus request counters/latency with
  session and lab ids collapsed out of the path label.
- ``RequestLoggingMiddleware`` logs one line per completed lab API call,
  tagged with the authenticated learner when there is one.

Add in reverse order of execution::

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)
"""

from __future__ import annotations

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .logging import get_logger, request_id_ctx
from .metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_FLIGHT,
    HTTP_REQUESTS_TOTAL,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_SHAPE = re.compile(r"^[a-zA-Z0-9\-]{8,128}$")

_LAB_ID = re.compile(r"^(/api/v1/labs/)[^/]+")
_SESSION_ID = re.compile(r"^(/api/v1/sessions/)[^/]+")

# Health checks and scrapes would drown the request log.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


def normalize_path(path: str) -> str:
    """Collapse lab and session ids so metric labels stay bounded."""
    path = _LAB_ID.sub(r"\1{lab_id}", path)
    return _SESSION_ID.sub(r"\1{session_id}", path)


def _pick_request_id(incoming: str) -> str:
    if _REQUEST_ID_SHAPE.match(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Propagate X-Request-ID through ``request_id_ctx``.

    Malformed incoming IDs are replaced with a fresh UUID.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        rid = _pick_request_id(request.headers.get(REQUEST_ID_HEADER, ""))
        request.state.request_id = rid

        reset_token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(reset_token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        labels = {"method": request.method, "path": normalize_path(request.url.path)}
        status = "500"
        started = time.perf_counter()
        HTTP_REQUESTS_IN_FLIGHT.inc()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            HTTP_REQUESTS_IN_FLIGHT.dec()
            HTTP_REQUEST_DURATION_SECONDS.labels(**labels).observe(
                time.perf_counter() - started,
            )
            HTTP_REQUESTS_TOTAL.labels(status=status, **labels).inc()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        if request.url.path in _QUIET_PATHS:
            return response

        identity = getattr(request.state, "auth_identity", None)
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "request_completed",
            method=request.method,
            path=normalize_path(request.url.path),
            status=response.status_code,
            user_id=identity.user_id if identity is not None else None,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response
