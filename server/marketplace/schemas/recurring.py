"""Recurring booking Pydantic schemas."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

TIME_OF_DAY_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$"


class RecurrenceFrequency(str, Enum):
    """How often a recurring booking repeats."""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class RecurrenceEndType(str, Enum):
    """What ends a recurrence."""
    DATE = "date"
    OCCURRENCES = "occurrences"
    NEVER = "never"


class RecurrencePattern(BaseModel):
    """Recurrence rule as stored in ``recurring_bookings.recurrence_pattern``."""

    model_config = ConfigDict(frozen=True)

    frequency: RecurrenceFrequency = Field(..., description="Repeat unit")
    interval: int = Field(1, description="Every N days/weeks/months")
    days_of_week: Optional[List[int]] = Field(
        None, description="Weekdays for weekly/biweekly, 0=Sunday .. 6=Saturday"
    )
    day_of_month: Optional[int] = Field(None, description="Day of month for monthly (1-31)")
    end_type: RecurrenceEndType = Field(RecurrenceEndType.NEVER, description="End condition")
    end_date: Optional[date] = Field(None, description="Last possible date when end_type is 'date'")
    occurrences: Optional[int] = Field(None, description="Number of occurrences when end_type is 'occurrences'")


class PreviewRecurringBookingRequest(BaseModel):
    """Request schema for previewing a recurring booking."""

    provider_id: str = Field(..., description="Provider to book")
    start_date: date = Field(..., description="First possible date")
    start_time: str = Field(..., pattern=TIME_OF_DAY_PATTERN, description="Time of day (HH:MM)")
    duration_minutes: int = Field(..., ge=1, le=24 * 60, description="Length of each booking")
    price_per_booking: Decimal = Field(..., ge=0, description="Price of one occurrence")
    recurrence_pattern: RecurrencePattern


class CreateRecurringBookingRequest(BaseModel):
    """Request schema for creating a recurring booking."""

    provider_id: str = Field(..., description="Provider to book")
    listing_id: str = Field(..., description="Service listing")
    service_title: str = Field(..., min_length=1, max_length=255, description="Service title")
    service_price: Decimal = Field(..., ge=0, description="Price of one occurrence")
    start_date: date = Field(..., description="First possible date")
    start_time: str = Field(..., pattern=TIME_OF_DAY_PATTERN, description="Time of day (HH:MM)")
    duration_minutes: int = Field(..., ge=1, le=24 * 60, description="Length of each booking")
    recurrence_pattern: RecurrencePattern


class RecurringOccurrence(BaseModel):
    """One previewed occurrence."""

    date: date
    time: str
    has_conflict: bool
    conflict_reason: Optional[str] = None


class DateRange(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None


class RecurringBookingPreview(BaseModel):
    """Preview of the occurrences a recurring booking would create."""

    occurrences: List[RecurringOccurrence]
    total_occurrences: int
    conflict_count: int
    estimated_cost: Decimal
    date_range: DateRange
    description: str = Field(..., description="Human-readable recurrence summary")


class RecurringBooking(BaseModel):
    """Recurring booking response schema."""

    id: str
    customer_id: str
    provider_id: str
    listing_id: Optional[str] = None
    service_title: str
    service_price: Decimal
    start_date: date
    start_time: str
    duration_minutes: int
    recurrence_pattern: RecurrencePattern
    is_active: bool
    created_bookings: int = 0
    next_booking_date: Optional[date] = None
    created_at: Optional[datetime] = None


class MaterializeResult(BaseModel):
    """Outcome of creating the next booking of a series."""

    booking_id: Optional[str] = Field(None, description="Created booking, if any")
    booking_date: Optional[date] = Field(None, description="Date the booking was created for")
    next_booking_date: Optional[date] = Field(None, description="Following occurrence, if any")
