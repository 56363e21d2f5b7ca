from __future__ import annotations

import logging
import re
import time
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def _incoming_correlation_id(request: Request) -> str:
    raw = (request.headers.get("x-correlation-id") or "").strip()
    if raw and _CORRELATION_ID_RE.match(raw):
        return raw
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._emit(request, 500, started, failed=True)
            raise

        self._emit(request, response.status_code, started)
        return response

    def _emit(self, request: Request, status_code: int, started: float, failed: bool = False) -> None:
        # route is only resolved once the router has run, so the label is computed afterwards
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
        extra = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=extra)
        else:
            logger.info("http.request", extra=extra)
