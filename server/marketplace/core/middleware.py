"""Request tracking and access logging middleware."""

import json
import logging
import time
import uuid
from typing import Any, Callable, Iterable, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import settings
from .observability import MetricsCollector, current_trace_ids

logger = logging.getLogger(__name__)

# Never written to logs: message bodies, recipients and template data of the
# notification functions, and anything that looks like a credential.
REDACTED_FIELDS = frozenset({
    "to", "message", "html", "text", "replyTo", "templateVariables",
    "phone", "email", "password", "token", "stripe_refund_id",
})


def redact(payload: Any, fields: Iterable[str] = REDACTED_FIELDS) -> Any:
    fields = frozenset(fields)
    if isinstance(payload, dict):
        return {key: "***" if key in fields else redact(value, fields) for key, value in payload.items()}
    if isinstance(payload, list):
        return [redact(item, fields) for item in payload]
    return payload


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Attach a request id to every request.

    The id comes from ``X-Request-ID`` when the mobile client sends one and is
    generated otherwise. It is echoed on the response and bound into the
    structlog context so every log line of the request carries it.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[self.header_name] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Access log with timing, plus the HTTP request metrics.

    Probes and the metrics scrape are neither logged nor counted. Trace and
    span ids come from the OpenTelemetry span opened by the FastAPI
    instrumentation, when tracing is enabled.
    """

    def __init__(
        self,
        app: ASGIApp,
        log_request_body: bool = False,
        skip_paths: Optional[list] = None,
    ):
        super().__init__(app)
        self.log_request_body = log_request_body
        self.skip_paths = frozenset(skip_paths or ["/health", "/ready", "/metrics", "/favicon.ico"])

    @staticmethod
    def _client_ip(request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    @staticmethod
    def _endpoint(request: Request) -> str:
        """Route template rather than the raw path, to keep metric cardinality bounded."""
        route = request.scope.get("route")
        return getattr(route, "path", None) or request.url.path

    async def _request_body(self, request: Request) -> Optional[Any]:
        body = await request.body()
        if not body:
            return None
        try:
            return redact(json.loads(body))
        except ValueError:
            return f"<{len(body)} bytes>"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.skip_paths:
            return await call_next(request)

        start_time = time.perf_counter()
        log_data = {
            "request_id": getattr(request.state, "request_id", "unknown"),
            "method": request.method,
            "path": request.url.path,
            "client_ip": self._client_ip(request),
            "user_agent": request.headers.get("User-Agent", "unknown"),
            **current_trace_ids(),
        }
        if "Idempotency-Key" in request.headers:
            log_data["idempotency_key"] = request.headers["Idempotency-Key"]

        if self.log_request_body and request.method in ("POST", "PUT", "PATCH"):
            body = await self._request_body(request)
            if body is not None:
                log_data["request_body"] = body

        logger.info("HTTP request started", extra=log_data)

        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start_time
            MetricsCollector.record_http_request(request.method, self._endpoint(request), 500, duration)
            logger.error(
                "HTTP request failed",
                extra={**log_data, "duration_ms": round(duration * 1000, 2)},
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start_time
        status_code = response.status_code
        MetricsCollector.record_http_request(request.method, self._endpoint(request), status_code, duration)

        log_data.update({
            "status_code": status_code,
            "duration_ms": round(duration * 1000, 2),
            "replayed": response.headers.get("Idempotent-Replayed") == "true",
        })

        if status_code >= 500:
            logger.error("HTTP request completed with server error", extra=log_data)
        elif status_code >= 400:
            logger.warning("HTTP request completed with client error", extra=log_data)
        else:
            logger.info("HTTP request completed", extra=log_data)

        return response


def setup_middleware(app, enable_logging: bool = True) -> None:
    """Install the middleware stack; the request id runs outermost."""
    # Last added runs first
    if enable_logging:
        app.add_middleware(LoggingMiddleware, log_request_body=settings.debug)

    app.add_middleware(RequestIDMiddleware)
