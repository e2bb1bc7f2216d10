"""FastAPI middleware for correlation IDs, metrics and request logging."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from entitlement_sync.core.logging import bind_correlation_id, reset_correlation_id
from entitlement_sync.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)

_ID_SEGMENT_RE = re.compile(
    r"/(?:[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}|\d+)(?=/|$)",
    re.IGNORECASE,
)
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,128}$")

# Probed constantly; logged at DEBUG only.
_PROBE_PATHS = frozenset({"/health", "/metrics"})


def normalize_path(path: str) -> str:
    """Collapse UUID and numeric path segments to ``{id}``."""
    return _ID_SEGMENT_RE.sub("/{id}", path)


def endpoint_label(request: Request) -> str:
    """Route template when one matched, else the id-stripped path."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return template or normalize_path(request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request count, latency and in-flight gauge per method and endpoint."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        in_flight = HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=normalize_path(request.url.path))
        in_flight.inc()
        started = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            in_flight.dec()
            endpoint = endpoint_label(request)
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            HTTP_REQUESTS_TOTAL.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopts a well-formed ``X-Correlation-ID`` or mints one, and echoes it back."""

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(self.CORRELATION_ID_HEADER, "")
        correlation_id = incoming if _CORRELATION_ID_RE.match(incoming) else uuid.uuid4().hex
        token = bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers[self.CORRELATION_ID_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One summary line per request.

    Request bodies are never read here: the webhook endpoint needs the
    untouched raw bytes for signature verification.
    """

    def __init__(self, app: ASGIApp, logger_name: str = "entitlement_sync.requests"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        fields = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception:
            fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            self.logger.exception("Unhandled error while serving request", extra=fields)
            raise

        fields["status_code"] = response.status_code
        fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        if request.url.path in _PROBE_PATHS:
            level = logging.DEBUG
        elif response.status_code >= 500:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.logger.log(level, "%s %s -> %s", request.method, request.url.path, response.status_code, extra=fields)
        return response


__all__ = [
    "CorrelationIdMiddleware",
    "MetricsMiddleware",
    "RequestLoggingMiddleware",
    "endpoint_label",
    "normalize_path",
]
