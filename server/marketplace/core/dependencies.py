"""FastAPI dependencies for database, authentication, collaborators and services."""

from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional

import jwt
from fastapi import Depends, Header, Request
from jwt import PyJWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ..backend import Backend
from ..cache import TwoTierCache
from ..services.escrow_service import EscrowService
from ..services.fee_service import FeeService
from ..services.idempotency_service import IdempotencyService
from ..services.inventory_service import InventoryService
from ..services.notification_service import NotificationService
from ..services.payment_gateway import PaymentGateway
from ..services.receipt_service import ReceiptService
from ..services.recurring_booking_service import RecurringBookingService
from ..services.refund_processor import RefundProcessor
from ..services.refund_service import AdminRefundService, RefundService
from ..services.shipping_service import ShippingService
from .config import settings
from .database import get_async_session
from .exceptions import AuthenticationError, AuthorizationError, ValidationError

ADMIN_ROLES = {"admin", "service_role"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """A local store session for the duration of the request."""
    async for session in get_async_session():
        yield session


@dataclass(frozen=True)
class AuthUser:
    user_id: str
    email: Optional[str] = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return bool(self.roles & ADMIN_ROLES)


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> AuthUser:
    """
    Authentication dependency that validates HS256 Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        AuthUser: Caller identity from the validated token

    Raises:
        AuthenticationError: If the token is missing, malformed, expired or invalid
    """
    if not authorization:
        raise AuthenticationError("Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError("Invalid authorization header format") from None
    if scheme.lower() != "bearer":
        raise AuthenticationError("Invalid authentication scheme")

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options={"require": ["sub"], "verify_aud": False},
        )
    except PyJWTError as e:
        raise AuthenticationError(f"Token validation failed: {e}") from e

    roles = set(payload.get("roles") or [])
    if payload.get("role"):
        roles.add(payload["role"])

    return AuthUser(user_id=str(payload["sub"]), email=payload.get("email"), roles=frozenset(roles))


async def require_admin(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if not user.is_admin:
        raise AuthorizationError("Administrator access required", required_permissions=["admin"])
    return user


async def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
) -> Optional[str]:
    """
    Optional Idempotency-Key header, validated for length.

    Raises:
        ValidationError: If the key is longer than 255 characters or blank
    """
    if idempotency_key is None:
        return None
    if not idempotency_key.strip() or len(idempotency_key) > 255:
        raise ValidationError(
            detail="Idempotency key must be between 1 and 255 characters",
            errors={"Idempotency-Key": "invalid length"},
        )
    return idempotency_key


# Collaborators created at startup and kept on app.state

def get_backend(request: Request) -> Backend:
    return request.app.state.backend


def get_cache(request: Request) -> Optional[TwoTierCache]:
    return getattr(request.app.state, "cache", None)


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_notifier(request: Request) -> NotificationService:
    return request.app.state.notifier


# Service factories

BACKEND_DEPENDENCY = Depends(get_backend)


def get_fee_service(backend: Backend = BACKEND_DEPENDENCY) -> FeeService:
    return FeeService(backend, default_percentage=settings.platform_fee_percentage)


def get_idempotency_service(db: AsyncSession = Depends(get_db)) -> IdempotencyService:
    return IdempotencyService(db, ttl_hours=settings.idempotency_ttl_hours)


def get_escrow_service(
    backend: Backend = BACKEND_DEPENDENCY,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    fees: FeeService = Depends(get_fee_service),
    notifier: NotificationService = Depends(get_notifier),
) -> EscrowService:
    return EscrowService(backend, gateway, fees, notifier, hold_days=settings.escrow_hold_days)


def get_refund_processor(
    backend: Backend = BACKEND_DEPENDENCY,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    fees: FeeService = Depends(get_fee_service),
    notifier: NotificationService = Depends(get_notifier),
) -> RefundProcessor:
    return RefundProcessor(backend, gateway, fees, notifier)


def get_receipt_service(
    backend: Backend = BACKEND_DEPENDENCY,
    notifier: NotificationService = Depends(get_notifier),
) -> ReceiptService:
    return ReceiptService(backend, notifier)


def get_shipping_service(
    backend: Backend = BACKEND_DEPENDENCY,
    cache: Optional[TwoTierCache] = Depends(get_cache),
) -> ShippingService:
    return ShippingService(backend, cache, rate_ttl=settings.shipping_rate_ttl_seconds)


def get_inventory_service(
    backend: Backend = BACKEND_DEPENDENCY,
    cache: Optional[TwoTierCache] = Depends(get_cache),
) -> InventoryService:
    return InventoryService(backend, cache)


def get_recurring_booking_service(backend: Backend = BACKEND_DEPENDENCY) -> RecurringBookingService:
    return RecurringBookingService(backend)


def get_refund_service(backend: Backend = BACKEND_DEPENDENCY) -> RefundService:
    return RefundService(backend)


def get_admin_refund_service(backend: Backend = BACKEND_DEPENDENCY) -> AdminRefundService:
    return AdminRefundService(backend)
