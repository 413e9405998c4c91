"""Escrow hold Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class EscrowHoldStatus(str, Enum):
    HELD = "Held"
    RELEASED = "Released"
    REFUNDED = "Refunded"
    DISPUTED = "Disputed"
    EXPIRED = "Expired"


class ReleaseTrigger(str, Enum):
    """Who asked for an escrow release."""
    MANUAL = "manual"
    AUTO = "auto"


class EscrowHold(BaseModel):
    """Customer payment held until its booking completes."""

    id: str
    booking_id: str
    customer_id: Optional[str] = None
    provider_id: Optional[str] = None
    amount: Decimal
    platform_fee: Optional[Decimal] = None
    provider_payout: Optional[Decimal] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_transfer_id: Optional[str] = None
    status: EscrowHoldStatus
    held_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class EscrowRelease(BaseModel):
    escrow_hold_id: str
    transfer_id: Optional[str] = None
    provider_payout: Decimal
    platform_fee: Decimal
    already_released: bool = False
