"""Payment processor gateway.

The official ``stripe`` library is synchronous, so calls run in a worker
thread. Every money-moving call carries an idempotency key so a retried
request cannot refund or pay out twice.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import stripe

from ..core.exceptions import PaymentProcessorError
from .fee_service import to_minor_units

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "usd"


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str
    amount_minor: int


@dataclass(frozen=True)
class TransferResult:
    id: str
    amount_minor: int
    destination: str


class PaymentGateway(ABC):
    """Money movement the marketplace delegates to its payment processor."""

    @abstractmethod
    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundResult:
        """Refund ``amount`` of a captured payment."""

    @abstractmethod
    async def create_transfer(
        self,
        destination_account: str,
        amount: Decimal,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> TransferResult:
        """Pay ``amount`` out to a connected account."""


def _is_retryable(error: stripe.StripeError) -> bool:
    return isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError))


def _processor_error(operation: str, error: stripe.StripeError) -> PaymentProcessorError:
    retryable = _is_retryable(error)
    logger.error(
        "Payment processor call failed",
        extra={
            "operation": operation,
            "processor_code": error.code,
            "http_status": error.http_status,
            "retryable": retryable,
            "error": error.user_message or str(error),
        },
    )
    return PaymentProcessorError(
        detail=error.user_message or str(error) or f"{operation} failed",
        processor_code=error.code,
        retryable=retryable,
    )


class StripeGateway(PaymentGateway):
    """``PaymentGateway`` backed by Stripe refunds and Connect transfers."""

    def __init__(self, api_key: str, currency: str = DEFAULT_CURRENCY):
        self.api_key = api_key
        self.currency = currency

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        return cls(api_key=settings.stripe_secret_key)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundResult:
        amount_minor = to_minor_units(amount)
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=payment_intent_id,
                amount=amount_minor,
                metadata=metadata or {},
                api_key=self.api_key,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _processor_error("refund", e) from e

        logger.info(
            "Stripe refund created",
            extra={"stripe_refund_id": refund.id, "payment_intent_id": payment_intent_id, "amount_minor": amount_minor},
        )
        return RefundResult(id=refund.id, status=refund.status, amount_minor=amount_minor)

    async def create_transfer(
        self,
        destination_account: str,
        amount: Decimal,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> TransferResult:
        amount_minor = to_minor_units(amount)
        params = {
            "amount": amount_minor,
            "currency": self.currency,
            "destination": destination_account,
            "metadata": metadata or {},
        }
        if transfer_group:
            params["transfer_group"] = transfer_group

        try:
            transfer = await asyncio.to_thread(
                stripe.Transfer.create,
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            raise _processor_error("transfer", e) from e

        logger.info(
            "Stripe transfer created",
            extra={"stripe_transfer_id": transfer.id, "destination": destination_account, "amount_minor": amount_minor},
        )
        return TransferResult(id=transfer.id, amount_minor=amount_minor, destination=destination_account)
