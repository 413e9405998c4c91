"""Provider availability and booking-conflict checks."""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from ..backend import Backend
from .recurrence import sunday_based_weekday

logger = logging.getLogger(__name__)

ACTIVE_BOOKING_STATUSES = ["pending", "confirmed", "in_progress"]

NOT_AVAILABLE_ON_DAY = "Provider not available on this day"
OUTSIDE_AVAILABLE_HOURS = "Time outside available hours"
DATE_BLOCKED = "Date is blocked"
SLOT_ALREADY_BOOKED = "Time slot already booked"


@dataclass(frozen=True)
class ConflictCheck:
    has_conflict: bool
    reason: Optional[str] = None


NO_CONFLICT = ConflictCheck(False)


def minutes_since_midnight(value: str) -> int:
    """Convert ``HH:MM`` or ``HH:MM:SS`` to minutes past midnight."""
    hours, minutes = value.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def intervals_overlap(start: int, end: int, other_start: int, other_end: int) -> bool:
    """Half-open interval overlap; back-to-back slots do not overlap."""
    return start < other_end and other_start < end


class AvailabilityService:
    """Checks a proposed slot against a provider's schedule."""

    def __init__(self, backend: Backend):
        self.backend = backend

    async def check_booking_conflict(
        self,
        provider_id: str,
        booking_date: date,
        start_time: str,
        duration_minutes: int,
    ) -> ConflictCheck:
        """
        Decide whether a provider can take a booking at the given slot.

        Checks run in order and the first failing one names the conflict:
        weekly availability, working hours, blocked date ranges, then
        existing active bookings.
        """
        availability = await (
            self.backend.table("provider_availability")
            .select()
            .eq("provider_id", provider_id)
            .eq("day_of_week", sunday_based_weekday(booking_date))
            .maybe_single()
            .execute()
        )
        if not availability or not availability.get("is_available"):
            return ConflictCheck(True, NOT_AVAILABLE_ON_DAY)

        start = minutes_since_midnight(start_time)
        end = start + duration_minutes
        available_start = minutes_since_midnight(availability["start_time"])
        available_end = minutes_since_midnight(availability["end_time"])
        if start < available_start or end > available_end:
            return ConflictCheck(True, OUTSIDE_AVAILABLE_HOURS)

        blocked = await (
            self.backend.table("blocked_dates")
            .select("id")
            .eq("provider_id", provider_id)
            .lte("start_date", booking_date)
            .gte("end_date", booking_date)
            .execute()
        )
        if blocked:
            return ConflictCheck(True, DATE_BLOCKED)

        bookings = await (
            self.backend.table("bookings")
            .select("id, booking_time, duration_minutes")
            .eq("provider_id", provider_id)
            .eq("booking_date", booking_date)
            .in_("status", ACTIVE_BOOKING_STATUSES)
            .execute()
        )
        for booking in bookings or []:
            if not booking.get("booking_time"):
                continue
            existing_start = minutes_since_midnight(booking["booking_time"])
            existing_end = existing_start + int(booking.get("duration_minutes") or 0)
            if intervals_overlap(start, end, existing_start, existing_end):
                logger.debug(
                    "Slot overlaps an existing booking",
                    extra={"provider_id": provider_id, "booking_id": booking.get("id"), "date": booking_date.isoformat()},
                )
                return ConflictCheck(True, SLOT_ALREADY_BOOKED)

        return NO_CONFLICT
