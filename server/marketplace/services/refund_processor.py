"""Issuing approved refunds through the payment processor."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..backend import Backend
from ..backend.rows import utcnow
from ..core.exceptions import ConflictError, NotFoundError, PaymentProcessorError, ValidationError
from ..core.observability import MetricsCollector
from ..schemas.escrow import EscrowHold, EscrowHoldStatus
from ..schemas.refunds import Refund, RefundStatus
from .escrow_service import ESCROW_TABLE, get_hold, record_wallet_transaction
from .fee_service import FeeService, round_money
from .notification_service import NotificationService
from .payment_gateway import PaymentGateway
from .refund_service import REFUNDS_TABLE

logger = logging.getLogger(__name__)

REFUNDABLE_HOLD_STATUSES = (EscrowHoldStatus.HELD, EscrowHoldStatus.DISPUTED)


@dataclass(frozen=True)
class ProcessedRefund:
    refund_id: str
    stripe_refund_id: str
    amount: Decimal
    status: str
    escrow_status: str


class RefundProcessor:
    """Moves a Pending refund's money back to the customer and settles the escrow hold."""

    def __init__(
        self,
        backend: Backend,
        gateway: PaymentGateway,
        fees: FeeService,
        notifier: Optional[NotificationService] = None,
    ):
        self.backend = backend
        self.gateway = gateway
        self.fees = fees
        self.notifier = notifier

    async def _get_pending_refund(self, refund_id: str) -> Refund:
        row = await self.backend.table(REFUNDS_TABLE).select().eq("id", refund_id).maybe_single().execute()
        if row is None:
            raise NotFoundError("refund", refund_id)
        refund = Refund.model_validate(row)
        if refund.status != RefundStatus.PENDING:
            raise ConflictError(
                f"Refund is already {refund.status.value.lower()}",
                conflicting_resource={"refund_id": refund_id, "status": refund.status.value},
            )
        return refund

    async def _refundable_hold(self, refund: Refund) -> EscrowHold:
        try:
            hold = await get_hold(self.backend, hold_id=refund.escrow_hold_id, booking_id=refund.booking_id)
        except NotFoundError:
            raise ConflictError("No captured payment found for this booking") from None

        if not hold.stripe_payment_intent_id:
            raise ConflictError("No captured payment found for this booking")
        if hold.status not in REFUNDABLE_HOLD_STATUSES:
            raise ConflictError(
                f"Escrow hold is {hold.status.value.lower()} and cannot be refunded",
                conflicting_resource={"escrow_hold_id": hold.id, "status": hold.status.value},
            )
        return hold

    async def _mark_failed(self, refund_id: str, error: PaymentProcessorError) -> None:
        await (
            self.backend.table(REFUNDS_TABLE)
            .update({
                "status": RefundStatus.FAILED.value,
                "notes": f"Processor error: {error.detail}",
                "processed_at": utcnow(),
            })
            .eq("id", refund_id)
            .eq("status", RefundStatus.PENDING.value)
            .execute()
        )

    async def _settle_hold(self, hold: EscrowHold, amount: Decimal) -> str:
        """Reduce or close the hold after ``amount`` went back to the customer."""
        held = round_money(hold.amount)
        if amount >= held:
            values = {"status": EscrowHoldStatus.REFUNDED.value}
            escrow_status = EscrowHoldStatus.REFUNDED.value
        else:
            remaining = held - amount
            platform_fee = await self.fees.platform_fee_for(remaining)
            values = {
                "amount": remaining,
                "platform_fee": platform_fee,
                "provider_payout": remaining - platform_fee,
            }
            escrow_status = hold.status.value

        await self.backend.table(ESCROW_TABLE).update(values).eq("id", hold.id).execute()
        if escrow_status == EscrowHoldStatus.REFUNDED.value:
            await self.backend.table("bookings").update({"escrow_status": "Refunded"}).eq("id", hold.booking_id).execute()
        return escrow_status

    async def process(self, refund_id: str, admin_id: str) -> ProcessedRefund:
        """
        Refund a Pending request through the processor.

        A processor failure marks the refund Failed, with the processor's
        message in its notes, and re-raises. The processor call is keyed on
        the refund id so a retried request cannot refund twice.
        """
        refund = await self._get_pending_refund(refund_id)
        hold = await self._refundable_hold(refund)

        amount = round_money(refund.amount)
        if amount > round_money(hold.amount):
            raise ValidationError(
                detail="Refund amount exceeds the amount held in escrow",
                errors={"amount": str(amount), "held": str(round_money(hold.amount))},
            )

        try:
            result = await self.gateway.create_refund(
                hold.stripe_payment_intent_id,
                amount,
                idempotency_key=f"refund_{refund.id}",
                metadata={"refund_id": refund.id, "booking_id": refund.booking_id, "escrow_hold_id": hold.id},
            )
        except PaymentProcessorError as e:
            await self._mark_failed(refund.id, e)
            MetricsCollector.record_refund_processed("failed")
            raise

        rows = await (
            self.backend.table(REFUNDS_TABLE)
            .update({
                "status": RefundStatus.COMPLETED.value,
                "stripe_refund_id": result.id,
                "escrow_hold_id": hold.id,
                "approved_by": admin_id,
                "processed_at": utcnow(),
            })
            .eq("id", refund.id)
            .eq("status", RefundStatus.PENDING.value)
            .execute()
        )
        if not rows:
            logger.warning("Refund changed state while being processed", extra={"refund_id": refund.id})

        escrow_status = await self._settle_hold(hold, amount)
        customer_id = hold.customer_id or refund.requested_by
        await record_wallet_transaction(
            self.backend,
            user_id=customer_id,
            booking_id=refund.booking_id,
            escrow_hold_id=hold.id,
            refund_id=refund.id,
            type="credit",
            transaction_type="Refund",
            amount=amount,
            description=f"Refund: {refund.reason}",
        )

        MetricsCollector.record_refund_processed("completed")
        logger.info(
            "Refund processed",
            extra={
                "refund_id": refund.id,
                "stripe_refund_id": result.id,
                "amount": str(amount),
                "escrow_status": escrow_status,
            },
        )

        if self.notifier and customer_id:
            await self.notifier.notify_user(
                customer_id,
                "Refund processed",
                f"Your refund of ${amount:.2f} has been issued. It may take 5-10 business days to appear.",
            )

        return ProcessedRefund(
            refund_id=refund.id,
            stripe_refund_id=result.id,
            amount=amount,
            status=RefundStatus.COMPLETED.value,
            escrow_status=escrow_status,
        )
