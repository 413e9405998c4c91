"""Customer refund requests and administrator refund management."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from ..backend import Backend
from ..backend.rows import parse_date, parse_datetime, utcnow
from ..core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..schemas.refunds import (
    CustomerRefundStats,
    ExpectedRefund,
    ManualRefundRequest,
    Refund,
    RefundEligibility,
    RefundMetrics,
    RefundStatus,
    SubmitRefundRequest,
)
from .fee_service import round_money

logger = logging.getLogger(__name__)

REFUNDS_TABLE = "refunds"

# (minimum days before the booking, percentage, policy text), most generous first
REFUND_TIERS = (
    (7, 100, "Full refund (100%) - Cancelling 7+ days before booking"),
    (3, 50, "Partial refund (50%) - Cancelling 3-6 days before booking"),
    (1, 25, "Partial refund (25%) - Cancelling 1-2 days before booking"),
)
NO_REFUND_POLICY = "No refund - Cancelling within 24 hours of booking"

REFUND_POLICY_SUMMARY = [
    "7+ days before: 100% refund",
    "3-6 days before: 50% refund",
    "1-2 days before: 25% refund",
    "Within 24 hours: No refund",
]

CUSTOMER_REASON_LABELS = {
    "Cancelled": "I need to cancel this booking",
    "ScheduleConflict": "Schedule conflict",
    "ServiceNotNeeded": "Service no longer needed",
    "FoundAlternative": "Found alternative service",
    "PriceIssue": "Price concerns",
    "Other": "Other reason",
}

ADMIN_REASON_LABELS = {
    "Cancelled": "Booking Cancelled",
    "Disputed": "Disputed Transaction",
    "ServiceNotProvided": "Service Not Provided",
    "QualityIssue": "Quality Issue",
    "NoShow": "No Show",
    "Other": "Other",
}

STATUS_LABELS = {
    RefundStatus.PENDING: "Under Review",
    RefundStatus.COMPLETED: "Refunded",
    RefundStatus.FAILED: "Declined",
}


def refund_percentage_for(days_until_booking: int) -> tuple[int, str]:
    """Cancellation policy: percentage refunded and the policy line that applies."""
    for min_days, percentage, policy in REFUND_TIERS:
        if days_until_booking >= min_days:
            return percentage, policy
    return 0, NO_REFUND_POLICY


def calculate_expected_refund(original_amount: Decimal, days_until_booking: int) -> ExpectedRefund:
    percentage, _ = refund_percentage_for(days_until_booking)
    return ExpectedRefund(
        amount=round_money(Decimal(original_amount) * percentage / 100),
        percentage=percentage,
    )


def days_until(booking_date: date, today: date) -> int:
    """Whole calendar days from ``today`` to the booking; negative once it has passed."""
    return (booking_date - today).days


def validate_refund_reason(reason: Optional[str], notes: Optional[str] = None) -> None:
    """
    Raises:
        ValidationError: when no reason is given, or "Other" comes without details
    """
    if not reason or not reason.strip():
        raise ValidationError(
            "Please select a reason for your refund request",
            errors={"reason": "required"},
        )
    if reason == "Other" and (not notes or not notes.strip()):
        raise ValidationError(
            "Please provide additional details for your refund request",
            errors={"notes": "required when reason is Other"},
        )


def refund_reason_label(reason: str, admin: bool = False) -> str:
    labels = ADMIN_REASON_LABELS if admin else CUSTOMER_REASON_LABELS
    return labels.get(reason, reason)


class RefundService:
    """Refund operations available to the customer who owns the booking."""

    def __init__(self, backend: Backend):
        self.backend = backend

    async def _get_booking(self, booking_id: str) -> dict[str, Any]:
        booking = await (
            self.backend.table("bookings")
            .select("id, title, price, scheduled_date, status, customer_id, provider_id")
            .eq("id", booking_id)
            .maybe_single()
            .execute()
        )
        if booking is None:
            raise NotFoundError("booking", booking_id)
        return booking

    async def _latest_refund_for(self, booking_id: str) -> Optional[dict[str, Any]]:
        rows = await (
            self.backend.table(REFUNDS_TABLE)
            .select("id, status")
            .eq("booking_id", booking_id)
            .order("created_at", ascending=False)
            .limit(1)
            .execute()
        )
        return rows[0] if rows else None

    async def check_eligibility(self, booking_id: str, today: Optional[date] = None) -> RefundEligibility:
        """Apply the cancellation policy to a booking."""
        booking = await self._get_booking(booking_id)
        return await self._eligibility_for(booking, today or utcnow().date())

    async def _eligibility_for(self, booking: dict[str, Any], today: date) -> RefundEligibility:
        original = round_money(Decimal(str(booking.get("price") or 0)))
        scheduled = parse_date(booking.get("scheduled_date"))
        days = days_until(scheduled, today) if scheduled else 0

        def ineligible(policy: str, reason: str) -> RefundEligibility:
            return RefundEligibility(
                eligible=False,
                refund_percentage=0,
                refund_amount=Decimal("0"),
                original_amount=original,
                days_until_booking=days,
                policy=policy,
                reason=reason,
            )

        if booking.get("status") == "Completed":
            return ineligible("Completed bookings cannot be refunded", "Booking already completed")
        if booking.get("status") == "Cancelled":
            return ineligible("Booking already cancelled", "Booking already cancelled")

        existing = await self._latest_refund_for(booking["id"])
        if existing:
            return ineligible("Refund already requested", f"Refund already {existing['status'].lower()}")

        percentage, policy = refund_percentage_for(days)
        return RefundEligibility(
            eligible=percentage > 0,
            refund_percentage=percentage,
            refund_amount=round_money(original * percentage / 100),
            original_amount=original,
            days_until_booking=days,
            policy=policy,
            reason=None if percentage > 0 else NO_REFUND_POLICY,
        )

    async def submit_refund_request(
        self,
        user_id: str,
        request: SubmitRefundRequest,
        today: Optional[date] = None,
    ) -> Refund:
        """
        Record a Pending refund and cancel the booking.

        Raises:
            ValidationError: bad reason, or amount above what the policy allows
            AuthorizationError: the booking belongs to someone else
            ConflictError: the booking is not eligible for a refund
        """
        validate_refund_reason(request.reason, request.notes)

        booking = await self._get_booking(request.booking_id)
        if booking.get("customer_id") != user_id:
            raise AuthorizationError("Only the booking's customer can request a refund")

        eligibility = await self._eligibility_for(booking, today or utcnow().date())
        if not eligibility.eligible:
            raise ConflictError(
                eligibility.reason or "Booking is not eligible for refund",
                conflicting_resource={"booking_id": request.booking_id, "policy": eligibility.policy},
            )
        if request.amount > eligibility.refund_amount:
            raise ValidationError(
                f"Requested amount exceeds the eligible refund of {eligibility.refund_amount}",
                errors={"amount": f"must not exceed {eligibility.refund_amount}"},
            )

        row = await (
            self.backend.table(REFUNDS_TABLE)
            .insert({
                "booking_id": request.booking_id,
                "amount": round_money(request.amount),
                "reason": request.reason,
                "notes": request.notes,
                "requested_by": user_id,
                "status": RefundStatus.PENDING.value,
            })
            .select()
            .single()
            .execute()
        )

        await (
            self.backend.table("bookings")
            .update({
                "refund_requested": True,
                "status": "Cancelled",
                "cancelled_at": utcnow(),
                "cancellation_reason": request.reason,
            })
            .eq("id", request.booking_id)
            .execute()
        )

        logger.info(
            "Refund requested",
            extra={
                "refund_id": row["id"],
                "booking_id": request.booking_id,
                "amount": str(request.amount),
                "refund_percentage": eligibility.refund_percentage,
            },
        )
        return Refund.model_validate(row)

    async def cancel_refund_request(self, refund_id: str, user_id: str) -> Refund:
        """Withdraw a Pending request; it is recorded as Failed."""
        refund = await self.get_refund(refund_id)
        if refund.requested_by != user_id:
            raise AuthorizationError("Only the requester can cancel this refund")
        if refund.status != RefundStatus.PENDING:
            raise ConflictError(
                "Can only cancel pending refund requests",
                conflicting_resource={"refund_id": refund_id, "status": refund.status.value},
            )

        rows = await (
            self.backend.table(REFUNDS_TABLE)
            .update({
                "status": RefundStatus.FAILED.value,
                "notes": "Cancelled by customer",
                "processed_at": utcnow(),
            })
            .eq("id", refund_id)
            .eq("status", RefundStatus.PENDING.value)
            .execute()
        )
        if not rows:
            raise ConflictError("Refund is no longer pending", conflicting_resource={"refund_id": refund_id})

        logger.info("Refund request cancelled by customer", extra={"refund_id": refund_id})
        return Refund.model_validate(rows[0])

    async def get_refund(self, refund_id: str) -> Refund:
        row = await self.backend.table(REFUNDS_TABLE).select().eq("id", refund_id).maybe_single().execute()
        if row is None:
            raise NotFoundError("refund", refund_id)
        return Refund.model_validate(row)

    async def get_customer_refunds(self, user_id: str) -> list[Refund]:
        """Refunds requested by a user, newest first, each with its booking summary."""
        rows = await (
            self.backend.table(REFUNDS_TABLE)
            .select()
            .eq("requested_by", user_id)
            .order("created_at", ascending=False)
            .execute()
        ) or []
        return await attach_bookings(self.backend, rows)

    async def get_booking_refund(self, booking_id: str, user_id: str) -> Optional[Refund]:
        rows = await (
            self.backend.table(REFUNDS_TABLE)
            .select()
            .eq("booking_id", booking_id)
            .eq("requested_by", user_id)
            .order("created_at", ascending=False)
            .limit(1)
            .execute()
        )
        return Refund.model_validate(rows[0]) if rows else None

    async def get_customer_stats(self, user_id: str) -> CustomerRefundStats:
        refunds = await self.get_customer_refunds(user_id)
        completed = [r for r in refunds if r.status == RefundStatus.COMPLETED]
        return CustomerRefundStats(
            total_refunds=len(refunds),
            pending_refunds=sum(1 for r in refunds if r.status == RefundStatus.PENDING),
            completed_refunds=len(completed),
            total_refunded_amount=sum((r.amount for r in completed), Decimal("0")),
        )


class AdminRefundService:
    """Refund review and reporting for administrators."""

    def __init__(self, backend: Backend):
        self.backend = backend

    async def list_refunds(
        self,
        status: Optional[RefundStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> list[Refund]:
        """
        Refunds newest first, optionally filtered.

        ``search`` matches case-insensitively against the booking title, the
        refund reason and the requester's name or email.
        """
        query = self.backend.table(REFUNDS_TABLE).select()
        if status is not None:
            query = query.eq("status", status.value)
        if from_date is not None:
            query = query.gte("created_at", from_date)
        if to_date is not None:
            query = query.lte("created_at", to_date)

        rows = await query.order("created_at", ascending=False).execute() or []
        refunds = await attach_bookings(self.backend, rows)

        if not search or not search.strip():
            return refunds

        needle = search.strip().lower()
        requesters = await self._profiles({r.requested_by for r in refunds if r.requested_by})

        def matches(refund: Refund) -> bool:
            profile = requesters.get(refund.requested_by or "", {})
            haystack = [
                refund.booking.title if refund.booking else None,
                refund.reason,
                profile.get("full_name"),
                profile.get("email"),
            ]
            return any(value and needle in value.lower() for value in haystack)

        return [refund for refund in refunds if matches(refund)]

    async def _profiles(self, user_ids: set[str]) -> dict[str, dict[str, Any]]:
        if not user_ids:
            return {}
        rows = await (
            self.backend.table("profiles")
            .select("id, full_name, email")
            .in_("id", sorted(user_ids))
            .execute()
        ) or []
        return {row["id"]: row for row in rows}

    async def booking_refund_history(self, booking_id: str) -> list[Refund]:
        rows = await (
            self.backend.table(REFUNDS_TABLE)
            .select()
            .eq("booking_id", booking_id)
            .order("created_at", ascending=False)
            .execute()
        ) or []
        return [Refund.model_validate(row) for row in rows]

    async def _transition_pending(self, refund_id: str, values: dict[str, Any]) -> Refund:
        """Update a refund only while it is still Pending."""
        rows = await (
            self.backend.table(REFUNDS_TABLE)
            .update({**values, "processed_at": utcnow()})
            .eq("id", refund_id)
            .eq("status", RefundStatus.PENDING.value)
            .execute()
        )
        if rows:
            return Refund.model_validate(rows[0])

        current = await self.backend.table(REFUNDS_TABLE).select("id, status").eq("id", refund_id).maybe_single().execute()
        if current is None:
            raise NotFoundError("refund", refund_id)
        raise ConflictError(
            f"Refund is already {current['status'].lower()}",
            conflicting_resource={"refund_id": refund_id, "status": current["status"]},
        )

    async def approve_refund(self, refund_id: str, admin_id: str, notes: Optional[str] = None) -> Refund:
        refund = await self._transition_pending(refund_id, {
            "approved_by": admin_id,
            "notes": notes,
            "status": RefundStatus.COMPLETED.value,
        })
        logger.info("Refund approved", extra={"refund_id": refund_id, "admin_id": admin_id})
        return refund

    async def reject_refund(self, refund_id: str, admin_id: str, reason: str) -> Refund:
        refund = await self._transition_pending(refund_id, {
            "approved_by": admin_id,
            "notes": f"Rejected: {reason}",
            "status": RefundStatus.FAILED.value,
        })
        logger.info("Refund rejected", extra={"refund_id": refund_id, "admin_id": admin_id})
        return refund

    async def mark_processed_manually(self, refund_id: str, stripe_refund_id: str) -> Refund:
        """Record a refund that was issued outside this service."""
        refund = await self._transition_pending(refund_id, {
            "stripe_refund_id": stripe_refund_id,
            "status": RefundStatus.COMPLETED.value,
        })
        logger.info(
            "Refund marked as processed manually",
            extra={"refund_id": refund_id, "stripe_refund_id": stripe_refund_id},
        )
        return refund

    async def create_manual_refund(self, admin_id: str, request: ManualRefundRequest) -> Refund:
        row = await (
            self.backend.table(REFUNDS_TABLE)
            .insert({
                "booking_id": request.booking_id,
                "amount": round_money(request.amount),
                "reason": request.reason.value,
                "requested_by": request.requested_by,
                "approved_by": admin_id,
                "notes": request.notes,
                "status": RefundStatus.PENDING.value,
            })
            .select()
            .single()
            .execute()
        )
        logger.info(
            "Manual refund created",
            extra={"refund_id": row["id"], "booking_id": request.booking_id, "admin_id": admin_id},
        )
        return Refund.model_validate(row)

    async def get_metrics(self, now: Optional[datetime] = None) -> RefundMetrics:
        """Counts by status plus amounts overall and for the current calendar month (UTC)."""
        now = now or utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        rows = await self.backend.table(REFUNDS_TABLE).select("amount, status, created_at").execute() or []
        amounts = [Decimal(str(row.get("amount") or 0)) for row in rows]
        this_month = [
            amount
            for row, amount in zip(rows, amounts)
            if row.get("created_at") and parse_datetime(row["created_at"]) >= month_start
        ]

        total_amount = sum(amounts, Decimal("0"))
        return RefundMetrics(
            total_refunds=len(rows),
            pending_refunds=sum(1 for row in rows if row.get("status") == RefundStatus.PENDING.value),
            completed_refunds=sum(1 for row in rows if row.get("status") == RefundStatus.COMPLETED.value),
            failed_refunds=sum(1 for row in rows if row.get("status") == RefundStatus.FAILED.value),
            total_refunded_amount=total_amount,
            avg_refund_amount=round_money(total_amount / len(rows)) if rows else Decimal("0"),
            refunds_this_month=len(this_month),
            refund_amount_this_month=sum(this_month, Decimal("0")),
        )


async def attach_bookings(backend: Backend, rows: list[dict[str, Any]]) -> list[Refund]:
    """Build refunds with a summary of their booking, fetched in one query."""
    booking_ids = sorted({row["booking_id"] for row in rows if row.get("booking_id")})
    bookings: dict[str, dict[str, Any]] = {}
    if booking_ids:
        found = await (
            backend.table("bookings")
            .select("id, title, price, scheduled_date, status")
            .in_("id", booking_ids)
            .execute()
        ) or []
        bookings = {booking["id"]: booking for booking in found}

    return [Refund.model_validate({**row, "booking": bookings.get(row.get("booking_id"))}) for row in rows]
