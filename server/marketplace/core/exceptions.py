"""
Error types of the marketplace service, rendered as RFC 9457 Problem Details.

Services raise these; routers let them propagate and the handlers registered
in ``main`` turn them into ``application/problem+json`` responses.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

PROBLEM_BASE_URI = "https://marketplace.example.com/problems"
PROBLEM_MEDIA_TYPE = "application/problem+json"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _problem_type(slug: str) -> str:
    return f"{PROBLEM_BASE_URI}/{slug}"


class ProblemDetailsException(HTTPException):
    """
    An HTTP error carrying a Problem Details body.

    ``extensions`` are merged into the body next to the standard members
    (type, title, status, detail, instance), so clients can branch on
    machine-readable fields such as ``code`` or ``errors``.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.title = title
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        body: Dict[str, Any] = {"type": self.type_uri, "title": title, "status": status_code}
        if detail:
            body["detail"] = detail
        if instance:
            body["instance"] = instance
        body.update(self.extensions)
        self.problem_details = body

    def __str__(self) -> str:
        return f"{self.status_code} {self.title}: {self.detail or ''}".rstrip(": ")


# Client errors

class ValidationError(ProblemDetailsException):
    """Input that is well-formed JSON but breaks a business rule (400)."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri=_problem_type("validation-error"),
            instance=instance,
            extensions={"errors": errors} if errors else None,
        )


class AuthenticationError(ProblemDetailsException):
    """Missing, malformed or expired bearer token (401)."""

    def __init__(self, detail: str = "Authentication credentials are required"):
        super().__init__(
            status_code=401,
            title="Authentication Required",
            detail=detail,
            type_uri=_problem_type("authentication-required"),
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """The caller is authenticated but may not act on the resource (403)."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        required_permissions: Optional[list] = None,
    ):
        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri=_problem_type("access-forbidden"),
            extensions={"required_permissions": required_permissions} if required_permissions else None,
        )


class NotFoundError(ProblemDetailsException):
    """A booking, refund, hold, item or other record does not exist (404)."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        if not detail:
            target = f"{resource_type} '{resource_id}'" if resource_id else resource_type
            detail = f"The requested {target} could not be found"

        extensions = {"resource_type": resource_type}
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri=_problem_type("resource-not-found"),
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """
    The record is not in a state that allows the operation (409).

    Used for refunds that are no longer Pending, holds that are disputed or
    already settled, and bookings that are not yet Completed.
    """

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri=_problem_type("resource-conflict"),
            extensions={"conflicting_resource": conflicting_resource} if conflicting_resource else None,
        )


class RateLimitError(ProblemDetailsException):
    """An upstream provider throttled the request (429)."""

    def __init__(self, detail: str = "Rate limit exceeded", retry_after: Optional[int] = None):
        extensions: Dict[str, Any] = {}
        headers: Dict[str, str] = {}
        if retry_after:
            headers["Retry-After"] = str(retry_after)
            extensions["retry_after_seconds"] = retry_after

        super().__init__(
            status_code=429,
            title="Rate Limit Exceeded",
            detail=detail,
            type_uri=_problem_type("rate-limit-exceeded"),
            extensions=extensions,
            headers=headers,
        )


class InternalServerError(ProblemDetailsException):
    """Unexpected failure; ``error_id`` ties the response to the logged traceback."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred while processing the request",
        error_id: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=500,
            title="Internal Server Error",
            detail=detail,
            type_uri=_problem_type("internal-server-error"),
            instance=instance,
            extensions={"error_id": error_id or str(uuid.uuid4()), "timestamp": _utc_timestamp()},
        )


# Upstream failures (502)

class BackendError(ProblemDetailsException):
    """A query, RPC or function call against the backend platform failed."""

    MISSING_RELATION = "PGRST205"
    CARDINALITY_VIOLATION = "PGRST116"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        upstream_status: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        self.code = code
        self.upstream_status = upstream_status
        self.operation = operation

        extensions: Dict[str, Any] = {"retryable": upstream_status is None or upstream_status >= 500}
        if code:
            extensions["code"] = code
        if upstream_status:
            extensions["upstream_status"] = upstream_status
        if operation:
            extensions["operation"] = operation

        super().__init__(
            status_code=502,
            title="Backend Request Failed",
            detail=message,
            type_uri=_problem_type("backend-error"),
            extensions=extensions,
        )

    @property
    def is_missing_relation(self) -> bool:
        """True when the table or function does not exist on the backend."""
        return self.code == self.MISSING_RELATION or "Could not find the table" in (self.detail or "")


class PaymentProcessorError(ProblemDetailsException):
    """The payment processor rejected or failed a refund or transfer."""

    def __init__(self, detail: str, processor_code: Optional[str] = None, retryable: bool = False):
        extensions: Dict[str, Any] = {"code": "PAYMENT_PROCESSOR_ERROR", "retryable": retryable}
        if processor_code:
            extensions["processor_code"] = processor_code

        super().__init__(
            status_code=502,
            title="Payment Processor Error",
            detail=detail,
            type_uri=_problem_type("payment-processor-error"),
            extensions=extensions,
        )


class NotificationDeliveryError(ProblemDetailsException):
    """An SMS or email provider refused a message."""

    def __init__(self, channel: str, detail: str, provider_status: Optional[int] = None):
        extensions: Dict[str, Any] = {"code": "NOTIFICATION_DELIVERY_FAILED", "channel": channel}
        if provider_status:
            extensions["provider_status"] = provider_status

        super().__init__(
            status_code=502,
            title="Notification Delivery Failed",
            detail=detail,
            type_uri=_problem_type("notification-delivery-failed"),
            extensions=extensions,
        )


# Handlers

async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """Render a raised problem, defaulting ``instance`` to the request path."""
    content = dict(exc.problem_details)
    content.setdefault("instance", request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=exc.headers,
        media_type=PROBLEM_MEDIA_TYPE,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log an unhandled exception under a fresh error id and answer with a 500 problem."""
    error_id = str(uuid.uuid4())

    logger.error(
        "Unhandled exception",
        extra={"error_id": error_id, "path": request.url.path, "error": str(exc)},
        exc_info=exc,
    )

    problem = InternalServerError(error_id=error_id, instance=request.url.path)
    return JSONResponse(
        status_code=problem.status_code,
        content=problem.problem_details,
        media_type=PROBLEM_MEDIA_TYPE,
    )
