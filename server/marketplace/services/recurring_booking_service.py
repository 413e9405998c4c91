"""Recurring booking orchestration over the backend platform."""

import asyncio
import logging
from datetime import date
from typing import Optional

from ..backend import Backend
from ..core.exceptions import BackendError, NotFoundError
from ..schemas.recurring import (
    CreateRecurringBookingRequest,
    DateRange,
    MaterializeResult,
    PreviewRecurringBookingRequest,
    RecurringBooking,
    RecurringBookingPreview,
    RecurringOccurrence,
)
from .availability_service import AvailabilityService
from .recurrence import (
    SAFETY_CAP,
    format_recurrence_pattern,
    generate_occurrence_dates,
    next_occurrence_after,
    validate_pattern,
)

logger = logging.getLogger(__name__)

RECURRING_TABLE = "recurring_bookings"


class RecurringBookingService:
    """Creates, previews and advances recurring booking series."""

    def __init__(self, backend: Backend, availability: Optional[AvailabilityService] = None):
        self.backend = backend
        self.availability = availability or AvailabilityService(backend)

    async def preview(self, request: PreviewRecurringBookingRequest) -> RecurringBookingPreview:
        """
        List the occurrences a series would produce, each checked for conflicts.

        Conflict checks for all occurrences run concurrently.
        """
        pattern = request.recurrence_pattern
        validate_pattern(pattern, request.start_date)
        dates = generate_occurrence_dates(request.start_date, pattern)

        checks = await asyncio.gather(*(
            self.availability.check_booking_conflict(
                request.provider_id, day, request.start_time, request.duration_minutes
            )
            for day in dates
        ))

        occurrences = [
            RecurringOccurrence(
                date=day,
                time=request.start_time,
                has_conflict=check.has_conflict,
                conflict_reason=check.reason,
            )
            for day, check in zip(dates, checks)
        ]

        return RecurringBookingPreview(
            occurrences=occurrences,
            total_occurrences=len(dates),
            conflict_count=sum(1 for o in occurrences if o.has_conflict),
            estimated_cost=request.price_per_booking * len(dates),
            date_range=DateRange(start=dates[0] if dates else None, end=dates[-1] if dates else None),
            description=format_recurrence_pattern(pattern),
        )

    async def create(self, customer_id: str, request: CreateRecurringBookingRequest) -> RecurringBooking:
        """
        Create a series and book its first occurrence.

        ``next_booking_date`` always names the next occurrence still to be
        booked, so the first occurrence is materialised immediately.
        """
        pattern = request.recurrence_pattern
        validate_pattern(pattern, request.start_date)
        first = generate_occurrence_dates(request.start_date, pattern, max_occurrences=1)

        row = await (
            self.backend.table(RECURRING_TABLE)
            .insert({
                "customer_id": customer_id,
                "provider_id": request.provider_id,
                "listing_id": request.listing_id,
                "service_title": request.service_title,
                "service_price": request.service_price,
                "start_date": request.start_date,
                "start_time": request.start_time,
                "duration_minutes": request.duration_minutes,
                "recurrence_pattern": pattern.model_dump(mode="json"),
                "is_active": True,
                "created_bookings": 0,
                "next_booking_date": first[0] if first else None,
            })
            .select()
            .single()
            .execute()
        )

        logger.info(
            "Recurring booking created",
            extra={
                "recurring_booking_id": row["id"],
                "customer_id": customer_id,
                "provider_id": request.provider_id,
                "frequency": pattern.frequency.value,
            },
        )

        await self.materialize_next(row["id"])
        return await self.get(row["id"])

    async def get(self, recurring_id: str) -> RecurringBooking:
        row = await self.backend.table(RECURRING_TABLE).select().eq("id", recurring_id).maybe_single().execute()
        if row is None:
            raise NotFoundError("recurring booking", recurring_id)
        return RecurringBooking.model_validate(row)

    async def materialize_next(self, recurring_id: str) -> MaterializeResult:
        """
        Book the series' next occurrence and advance the series.

        Does nothing when the series is inactive or finished. An existing
        booking for the date is not duplicated, but the series still advances.
        """
        recurring = await self.get(recurring_id)
        booking_date = recurring.next_booking_date
        if not recurring.is_active or booking_date is None:
            return MaterializeResult()

        existing = await (
            self.backend.table("bookings")
            .select("id")
            .eq("recurring_booking_id", recurring_id)
            .eq("booking_date", booking_date)
            .limit(1)
            .execute()
        )

        booking_id = None
        created = recurring.created_bookings
        if existing:
            logger.info(
                "Booking already exists for occurrence",
                extra={"recurring_booking_id": recurring_id, "booking_date": booking_date.isoformat()},
            )
        else:
            booking = await (
                self.backend.table("bookings")
                .insert({
                    "customer_id": recurring.customer_id,
                    "provider_id": recurring.provider_id,
                    "listing_id": recurring.listing_id,
                    "title": recurring.service_title,
                    "booking_date": booking_date,
                    "booking_time": recurring.start_time,
                    "duration_minutes": recurring.duration_minutes,
                    "total_price": recurring.service_price,
                    "status": "pending",
                    "recurring_booking_id": recurring_id,
                })
                .select("id")
                .single()
                .execute()
            )
            booking_id = booking["id"]
            created += 1

        next_date = next_occurrence_after(
            recurring.start_date,
            recurring.recurrence_pattern,
            booking_date,
            max_occurrences=SAFETY_CAP,
        )

        await (
            self.backend.table(RECURRING_TABLE)
            .update({"created_bookings": created, "next_booking_date": next_date})
            .eq("id", recurring_id)
            .execute()
        )

        logger.info(
            "Recurring booking advanced",
            extra={
                "recurring_booking_id": recurring_id,
                "booking_id": booking_id,
                "booking_date": booking_date.isoformat(),
                "next_booking_date": next_date.isoformat() if next_date else None,
            },
        )
        return MaterializeResult(booking_id=booking_id, booking_date=booking_date, next_booking_date=next_date)

    async def materialize_due(self, today: date) -> list[MaterializeResult]:
        """Advance every active series whose next booking date is on or before ``today``."""
        rows = await (
            self.backend.table(RECURRING_TABLE)
            .select("id")
            .eq("is_active", True)
            .lte("next_booking_date", today)
            .execute()
        )
        return [await self.materialize_next(row["id"]) for row in rows or []]

    async def cancel(self, recurring_id: str, customer_id: Optional[str] = None) -> None:
        """Deactivate a series; already created bookings are left alone."""
        query = self.backend.table(RECURRING_TABLE).update({"is_active": False}).eq("id", recurring_id)
        if customer_id is not None:
            query = query.eq("customer_id", customer_id)

        rows = await query.execute()
        if not rows:
            raise NotFoundError("recurring booking", recurring_id)

        logger.info("Recurring booking cancelled", extra={"recurring_booking_id": recurring_id})

    async def list_for_customer(self, customer_id: str) -> list[RecurringBooking]:
        """Series owned by a customer, newest first."""
        try:
            rows = await (
                self.backend.table(RECURRING_TABLE)
                .select()
                .eq("customer_id", customer_id)
                .order("created_at", ascending=False)
                .execute()
            )
        except BackendError as e:
            if e.is_missing_relation:
                logger.warning("Recurring bookings table not found; feature not enabled on backend")
                return []
            raise
        return [RecurringBooking.model_validate(row) for row in rows or []]
