"""Platform fee Pydantic schemas."""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class FeeType(str, Enum):
    PERCENTAGE = "Percentage"
    FLAT = "Flat"
    HYBRID = "Hybrid"


class FeeAppliesTo(str, Enum):
    BOOKINGS = "Bookings"
    SUBSCRIPTIONS = "Subscriptions"
    FEATURED = "Featured"
    ALL = "All"


class DiscountType(str, Enum):
    PERCENTAGE = "Percentage"
    FLAT = "Flat"


class FeeConfig(BaseModel):
    """A platform fee rule as stored in ``platform_fee_config``."""

    id: Optional[str] = None
    config_name: str = ""
    fee_type: FeeType = FeeType.PERCENTAGE
    percentage_rate: Decimal = Field(Decimal("0"), description="Percent of the transaction, 0-100")
    flat_amount: Decimal = Decimal("0")
    minimum_fee: Decimal = Decimal("0")
    maximum_fee: Optional[Decimal] = None
    applies_to: FeeAppliesTo = FeeAppliesTo.BOOKINGS
    is_active: bool = True
    effective_date: Optional[date] = None
    expires_date: Optional[date] = None
    description: Optional[str] = None


class SubscriptionDiscount(BaseModel):
    """Fee discount granted to a subscription plan."""

    id: Optional[str] = None
    subscription_plan: str
    discount_type: DiscountType
    discount_value: Decimal
    applies_to: FeeAppliesTo = FeeAppliesTo.ALL


class FeeCalculation(BaseModel):
    """Breakdown of the fee charged on one transaction."""

    transaction_amount: Decimal
    base_fee: Decimal
    discounts_applied: Decimal = Decimal("0")
    final_fee: Decimal
    provider_payout: Decimal
    config_id: Optional[str] = None
    subscription_discount_id: Optional[str] = None
