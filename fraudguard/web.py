"""HTTP application for the fraud-detection service: routes and middleware."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from typing import Protocol

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp

REQUEST_ID_HEADER = "X-Request-ID"
METRICS_MEDIA_TYPE = "text/plain; version=0.0.4"

_log = logging.getLogger(__name__)
_request_id: ContextVar[str] = ContextVar("request_id", default="")


def current_request_id() -> str:
    """Request ID of the request being served, or an empty string outside one."""
    return _request_id.get()


class _AssessHandler(Protocol):
    def assess_transaction(self, request: Request) -> Awaitable[Response]: ...


class _Metrics(Protocol):
    def render(self) -> str: ...


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Takes the request ID from the header, or makes one, and echoes it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = _request_id.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs the start and the completion of every request."""

    def __init__(self, app: ASGIApp, logger: logging.Logger | None = None) -> None:
        super().__init__(app)
        self._logger = logger or _log

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        method, path = request.method, request.url.path
        self._logger.info(
            "request started: method=%s path=%s request_id=%s",
            method,
            path,
            current_request_id(),
        )
        response = await call_next(request)
        self._logger.info(
            "request completed: method=%s path=%s status=%d duration_ms=%.3f request_id=%s",
            method,
            path,
            response.status_code,
            (time.perf_counter() - start) * 1000.0,
            current_request_id(),
        )
        return response


class RecoveryMiddleware(BaseHTTPMiddleware):
    """Turns an unhandled exception into a 500 JSON error response."""

    def __init__(self, app: ASGIApp, logger: logging.Logger | None = None) -> None:
        super().__init__(app)
        self._logger = logger or _log

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            self._logger.error(
                "panic recovered: error=%s path=%s request_id=%s",
                exc,
                request.url.path,
                current_request_id(),
            )
            return JSONResponse({"error": "internal server error"}, status_code=500)


def create_app(
    handler: _AssessHandler,
    logger: logging.Logger | None = None,
    metrics: _Metrics | None = None,
    ready_check: Callable[[], bool] = lambda: True,
) -> Starlette:
    """Application with the assessment route and the operational endpoints."""

    async def health(_: Request) -> Response:
        return Response(b'{"status":"up"}', media_type="application/json")

    async def ready(_: Request) -> Response:
        if ready_check():
            return Response(b'{"status":"ready"}', media_type="application/json")
        return Response(b'{"status":"not_ready"}', status_code=503, media_type="application/json")

    async def metrics_endpoint(_: Request) -> Response:
        text = metrics.render() if metrics is not None else ""
        return PlainTextResponse(text, media_type=METRICS_MEDIA_TYPE)

    routes = [
        Route("/v1/transactions/assess", handler.assess_transaction, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
        Route("/ready", ready, methods=["GET"]),
        Route("/metrics", metrics_endpoint, methods=["GET"]),
    ]
    middleware = [
        Middleware(RequestIDMiddleware),
        Middleware(LoggingMiddleware, logger=logger),
        Middleware(RecoveryMiddleware, logger=logger),
    ]
    return Starlette(routes=routes, middleware=middleware)