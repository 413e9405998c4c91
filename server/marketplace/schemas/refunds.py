"""Refund-related Pydantic schemas."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RefundStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class CustomerRefundReason(str, Enum):
    """Reasons a customer can give when asking for a refund."""
    CANCELLED = "Cancelled"
    SCHEDULE_CONFLICT = "ScheduleConflict"
    SERVICE_NOT_NEEDED = "ServiceNotNeeded"
    FOUND_ALTERNATIVE = "FoundAlternative"
    PRICE_ISSUE = "PriceIssue"
    OTHER = "Other"


class AdminRefundReason(str, Enum):
    """Reasons an administrator records on a manual refund."""
    CANCELLED = "Cancelled"
    DISPUTED = "Disputed"
    SERVICE_NOT_PROVIDED = "ServiceNotProvided"
    QUALITY_ISSUE = "QualityIssue"
    NO_SHOW = "NoShow"
    OTHER = "Other"


class RefundEligibility(BaseModel):
    """Whether a booking can be refunded now, and for how much."""

    eligible: bool
    refund_percentage: int = Field(..., description="0, 25, 50 or 100")
    refund_amount: Decimal
    original_amount: Decimal
    days_until_booking: int
    policy: str
    reason: Optional[str] = Field(None, description="Why the booking is not eligible")


class ExpectedRefund(BaseModel):
    amount: Decimal
    percentage: int


class SubmitRefundRequest(BaseModel):
    """Request schema for a customer refund request."""

    booking_id: str
    amount: Decimal = Field(..., gt=0, description="Requested refund amount")
    reason: str = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = Field(None, max_length=2000)


class RefundBookingSummary(BaseModel):
    id: str
    title: Optional[str] = None
    price: Optional[Decimal] = None
    scheduled_date: Optional[date] = None
    status: Optional[str] = None


class Refund(BaseModel):
    """Refund response schema."""

    id: str
    booking_id: str
    escrow_hold_id: Optional[str] = None
    dispute_id: Optional[str] = None
    amount: Decimal
    reason: str
    stripe_refund_id: Optional[str] = None
    status: RefundStatus
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    booking: Optional[RefundBookingSummary] = None


class CustomerRefundStats(BaseModel):
    total_refunds: int = 0
    pending_refunds: int = 0
    completed_refunds: int = 0
    total_refunded_amount: Decimal = Decimal("0")


class RefundMetrics(BaseModel):
    """Platform-wide refund figures for administrators."""

    total_refunds: int = 0
    pending_refunds: int = 0
    completed_refunds: int = 0
    failed_refunds: int = 0
    total_refunded_amount: Decimal = Decimal("0")
    avg_refund_amount: Decimal = Decimal("0")
    refunds_this_month: int = 0
    refund_amount_this_month: Decimal = Decimal("0")


class ApproveRefundRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


class RejectRefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class ManualProcessRequest(BaseModel):
    stripe_refund_id: str = Field(..., min_length=1, max_length=255, description="Processor refund reference")


class ManualRefundRequest(BaseModel):
    """Refund created by an administrator on behalf of a customer."""

    booking_id: str
    amount: Decimal = Field(..., gt=0)
    reason: AdminRefundReason
    requested_by: str
    notes: Optional[str] = Field(None, max_length=2000)


class RefundPolicy(BaseModel):
    rules: List[str]
