"""Escrow release: paying providers once their booking is complete."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Optional

from ..backend import Backend, Query
from ..backend.rows import utcnow
from ..core.exceptions import (
    AuthorizationError,
    BackendError,
    ConflictError,
    NotFoundError,
    ProblemDetailsException,
)
from ..core.observability import MetricsCollector
from ..schemas.escrow import EscrowHold, EscrowHoldStatus, EscrowRelease, ReleaseTrigger
from .fee_service import FeeService, round_money
from .notification_service import NotificationService
from .payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

ESCROW_TABLE = "escrow_holds"
WALLET_TABLE = "wallet_transactions"
AUTO_RELEASE_BATCH_SIZE = 100


async def record_wallet_transaction(backend: Backend, **values: Any) -> None:
    """
    Append a ledger entry for money that has already moved.

    A failed insert is logged rather than raised so that it cannot undo the
    caller's successful processor call.
    """
    try:
        await backend.table(WALLET_TABLE).insert({"status": "Completed", **values}).execute()
    except BackendError as e:
        logger.error(
            "Failed to record wallet transaction",
            extra={"transaction_type": values.get("transaction_type"), "error": str(e)},
        )


async def get_hold(backend: Backend, hold_id: Optional[str] = None, booking_id: Optional[str] = None) -> EscrowHold:
    """Hold by id, or the most recent hold for a booking."""
    query = backend.table(ESCROW_TABLE).select()
    if hold_id:
        query = query.eq("id", hold_id)
    else:
        query = query.eq("booking_id", booking_id).order("held_at", ascending=False).limit(1)

    row = await query.maybe_single().execute()
    if row is None:
        raise NotFoundError("escrow hold", hold_id or booking_id)
    return EscrowHold.model_validate(row)


class EscrowService:
    def __init__(
        self,
        backend: Backend,
        gateway: PaymentGateway,
        fees: FeeService,
        notifier: Optional[NotificationService] = None,
        hold_days: int = 30,
    ):
        self.backend = backend
        self.gateway = gateway
        self.fees = fees
        self.notifier = notifier
        self.hold_days = hold_days

    async def _get_booking(self, booking_id: str) -> dict[str, Any]:
        booking = await self.backend.table("bookings").select().eq("id", booking_id).maybe_single().execute()
        if booking is None:
            raise NotFoundError("booking", booking_id)
        return booking

    async def _payout_account(self, provider_id: str) -> str:
        account = await (
            self.backend.table("stripe_connect_accounts")
            .select("stripe_account_id, payouts_enabled")
            .eq("user_id", provider_id)
            .maybe_single()
            .execute()
        )
        if not account or not account.get("stripe_account_id") or not account.get("payouts_enabled"):
            raise ConflictError(
                "Provider has not completed payout onboarding",
                conflicting_resource={"provider_id": provider_id},
            )
        return account["stripe_account_id"]

    @staticmethod
    def _already_released(hold: EscrowHold) -> EscrowRelease:
        return EscrowRelease(
            escrow_hold_id=hold.id,
            transfer_id=hold.stripe_transfer_id,
            provider_payout=hold.provider_payout or Decimal("0"),
            platform_fee=hold.platform_fee or Decimal("0"),
            already_released=True,
        )

    async def release(
        self,
        hold_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        caller_id: Optional[str] = None,
        caller_is_admin: bool = False,
        trigger: ReleaseTrigger = ReleaseTrigger.MANUAL,
    ) -> EscrowRelease:
        """
        Transfer a held payment, minus the platform fee, to the provider.

        Releasing an already released hold succeeds without moving money
        again. The processor transfer carries an idempotency key derived from
        the hold, so a retry after a partial failure cannot pay twice.
        """
        hold = await get_hold(self.backend, hold_id=hold_id, booking_id=booking_id)
        booking = await self._get_booking(hold.booking_id)

        if not caller_is_admin and caller_id != booking.get("customer_id"):
            raise AuthorizationError("Only the booking's customer or an administrator can release escrow")

        if hold.status == EscrowHoldStatus.RELEASED:
            logger.info("Escrow hold already released", extra={"escrow_hold_id": hold.id})
            return self._already_released(hold)
        if hold.status == EscrowHoldStatus.DISPUTED:
            raise ConflictError(
                "Escrow hold is disputed and cannot be released",
                conflicting_resource={"escrow_hold_id": hold.id, "status": hold.status.value},
            )
        if hold.status != EscrowHoldStatus.HELD:
            raise ConflictError(
                f"Escrow hold is {hold.status.value.lower()}",
                conflicting_resource={"escrow_hold_id": hold.id, "status": hold.status.value},
            )
        if booking.get("status") != "Completed":
            raise ConflictError(
                "Booking must be completed before escrow is released",
                conflicting_resource={"booking_id": hold.booking_id, "status": booking.get("status")},
            )

        provider_id = hold.provider_id or booking.get("provider_id")
        destination = await self._payout_account(provider_id)

        amount = round_money(hold.amount)
        if hold.platform_fee is not None:
            platform_fee = min(round_money(hold.platform_fee), amount)
        else:
            platform_fee = await self.fees.platform_fee_for(amount)
        payout = amount - platform_fee

        transfer_id = None
        if payout > 0:
            transfer = await self.gateway.create_transfer(
                destination,
                payout,
                idempotency_key=f"escrow_release_{hold.id}",
                transfer_group=f"booking_{hold.booking_id}",
                metadata={"escrow_hold_id": hold.id, "booking_id": hold.booking_id, "trigger": trigger.value},
            )
            transfer_id = transfer.id

        now = utcnow()
        rows = await (
            self.backend.table(ESCROW_TABLE)
            .update({
                "status": EscrowHoldStatus.RELEASED.value,
                "stripe_transfer_id": transfer_id,
                "released_at": now,
                "platform_fee": platform_fee,
                "provider_payout": payout,
            })
            .eq("id", hold.id)
            .eq("status", EscrowHoldStatus.HELD.value)
            .execute()
        )
        if not rows:
            # Another release won the race; the transfer above was deduplicated by its key.
            current = await get_hold(self.backend, hold_id=hold.id)
            if current.status == EscrowHoldStatus.RELEASED:
                return self._already_released(current)
            raise ConflictError(f"Escrow hold is {current.status.value.lower()}")

        await self.backend.table("bookings").update({"escrow_status": "Released"}).eq("id", hold.booking_id).execute()
        await record_wallet_transaction(
            self.backend,
            user_id=provider_id,
            booking_id=hold.booking_id,
            escrow_hold_id=hold.id,
            type="credit",
            transaction_type="Payout",
            amount=payout,
            description=f"Payout for {booking.get('title') or 'booking'}",
        )

        MetricsCollector.record_escrow_released(trigger.value)
        logger.info(
            "Escrow released",
            extra={
                "escrow_hold_id": hold.id,
                "booking_id": hold.booking_id,
                "transfer_id": transfer_id,
                "provider_payout": str(payout),
                "platform_fee": str(platform_fee),
                "trigger": trigger.value,
            },
        )

        if self.notifier:
            await self.notifier.notify_user(
                provider_id,
                "Payment released",
                f"${payout:.2f} for {booking.get('title') or 'your booking'} is on its way to your account.",
            )

        return EscrowRelease(
            escrow_hold_id=hold.id,
            transfer_id=transfer_id,
            provider_payout=payout,
            platform_fee=platform_fee,
        )

    async def _held_pages(self, narrow: Callable[[Query], Query]) -> AsyncIterator[list[dict[str, Any]]]:
        """Held rows matching ``narrow``, read in id order one page at a time."""
        last_id = None
        while True:
            query = narrow(self.backend.table(ESCROW_TABLE).select().eq("status", EscrowHoldStatus.HELD.value))
            if last_id is not None:
                query = query.gt("id", last_id)
            page = await query.order("id").limit(AUTO_RELEASE_BATCH_SIZE).execute() or []
            if page:
                yield page
            if len(page) < AUTO_RELEASE_BATCH_SIZE:
                return
            last_id = page[-1]["id"]

    async def _with_completed_booking(self, rows: list[dict[str, Any]]) -> list[EscrowHold]:
        holds = [EscrowHold.model_validate(row) for row in rows]
        completed = await (
            self.backend.table("bookings")
            .select("id")
            .in_("id", sorted({hold.booking_id for hold in holds}))
            .eq("status", "Completed")
            .execute()
        ) or []
        completed_ids = {row["id"] for row in completed}
        return [hold for hold in holds if hold.booking_id in completed_ids]

    async def find_due_for_auto_release(self, now: Optional[datetime] = None) -> list[EscrowHold]:
        """
        Held payments past their hold period whose booking has completed.

        Due holds are scanned page by page so that holds whose booking is not
        complete yet never crowd out later ones. At most
        ``AUTO_RELEASE_BATCH_SIZE`` holds are returned per call.
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=self.hold_days)
        due: list[EscrowHold] = []

        # Holds written without an expiry fall back to the configured hold period.
        for narrow in (
            lambda query: query.lte("expires_at", now),
            lambda query: query.is_("expires_at", None).lte("held_at", cutoff),
        ):
            async for page in self._held_pages(narrow):
                due.extend(await self._with_completed_booking(page))
                if len(due) >= AUTO_RELEASE_BATCH_SIZE:
                    return due[:AUTO_RELEASE_BATCH_SIZE]
        return due

    async def release_due(self, now: Optional[datetime] = None) -> int:
        """Auto-release every due hold; one failing hold does not stop the rest."""
        released = 0
        for hold in await self.find_due_for_auto_release(now):
            try:
                result = await self.release(hold_id=hold.id, caller_is_admin=True, trigger=ReleaseTrigger.AUTO)
            except ProblemDetailsException as e:
                logger.warning(
                    "Automatic escrow release failed",
                    extra={"escrow_hold_id": hold.id, "status": e.status_code, "error": str(e)},
                )
                continue
            if not result.already_released:
                released += 1
        return released
