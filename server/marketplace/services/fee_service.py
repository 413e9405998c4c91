"""Platform fee calculation."""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..backend import Backend
from ..backend.rows import parse_date, utcnow
from ..schemas.fees import (
    DiscountType,
    FeeAppliesTo,
    FeeCalculation,
    FeeConfig,
    FeeType,
    SubscriptionDiscount,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
DEFAULT_PLATFORM_FEE_PERCENTAGE = Decimal("10")


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Dollars to integer cents for the payment processor."""
    return int((round_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def calculate_fee(amount: Decimal, config: FeeConfig) -> Decimal:
    """
    Fee for ``amount`` under ``config``.

    The raw fee is floored at ``minimum_fee`` and, when set, capped at
    ``maximum_fee``. The result is rounded to cents.
    """
    amount = Decimal(amount)

    if config.fee_type == FeeType.PERCENTAGE:
        fee = amount * config.percentage_rate / HUNDRED
    elif config.fee_type == FeeType.FLAT:
        fee = config.flat_amount
    else:
        fee = amount * config.percentage_rate / HUNDRED + config.flat_amount

    if fee < config.minimum_fee:
        fee = config.minimum_fee
    if config.maximum_fee is not None and fee > config.maximum_fee:
        fee = config.maximum_fee

    return round_money(fee)


def apply_subscription_discount(fee: Decimal, discount: Optional[SubscriptionDiscount]) -> Decimal:
    """Discount taken off a fee; never more than the fee itself."""
    if discount is None:
        return Decimal("0")
    if discount.discount_type == DiscountType.PERCENTAGE:
        reduction = fee * discount.discount_value / HUNDRED
    else:
        reduction = discount.discount_value
    return round_money(min(max(reduction, Decimal("0")), fee))


def format_fee_display(config: FeeConfig) -> str:
    """Short label such as ``10%``, ``$2.50`` or ``5% + $0.30``."""
    rate = config.percentage_rate.normalize()
    if config.fee_type == FeeType.PERCENTAGE:
        return f"{rate:f}%"
    if config.fee_type == FeeType.FLAT:
        return f"${round_money(config.flat_amount):.2f}"
    return f"{rate:f}% + ${round_money(config.flat_amount):.2f}"


def validate_fee_config(config: FeeConfig) -> list[str]:
    """Return the problems with a fee configuration; empty when it is valid."""
    errors = []

    if not config.config_name or not config.config_name.strip():
        errors.append("Configuration name is required")

    if config.fee_type in (FeeType.PERCENTAGE, FeeType.HYBRID):
        if not Decimal("0") <= config.percentage_rate <= HUNDRED:
            errors.append("Percentage rate must be between 0 and 100")

    if config.fee_type in (FeeType.FLAT, FeeType.HYBRID) and config.flat_amount < 0:
        errors.append("Flat amount must be 0 or greater")

    if config.maximum_fee is not None and config.maximum_fee < config.minimum_fee:
        errors.append("Maximum fee must be greater than minimum fee")

    return errors


class FeeService:
    """Resolves the active fee rule and splits payments between platform and provider."""

    def __init__(self, backend: Backend, default_percentage: Decimal = DEFAULT_PLATFORM_FEE_PERCENTAGE):
        self.backend = backend
        self.default_percentage = Decimal(default_percentage)

    @property
    def fallback_config(self) -> FeeConfig:
        return FeeConfig(
            config_name="default",
            fee_type=FeeType.PERCENTAGE,
            percentage_rate=self.default_percentage,
        )

    async def get_active_config(
        self,
        applies_to: FeeAppliesTo = FeeAppliesTo.BOOKINGS,
        today: Optional[date] = None,
    ) -> Optional[FeeConfig]:
        """Most recently effective active rule for ``applies_to`` (or All) that has not expired."""
        today = today or utcnow().date()
        rows = await (
            self.backend.table("platform_fee_config")
            .select()
            .eq("is_active", True)
            .in_("applies_to", [applies_to.value, FeeAppliesTo.ALL.value])
            .lte("effective_date", today)
            .order("effective_date", ascending=False)
            .limit(10)
            .execute()
        )
        for row in rows or []:
            expires = parse_date(row.get("expires_date"))
            if expires is None or expires >= today:
                return FeeConfig.model_validate(row)
        return None

    async def get_subscription_discount(
        self,
        plan: str,
        applies_to: FeeAppliesTo = FeeAppliesTo.BOOKINGS,
    ) -> Optional[SubscriptionDiscount]:
        rows = await (
            self.backend.table("subscription_tier_fees")
            .select()
            .eq("subscription_plan", plan)
            .eq("is_active", True)
            .in_("applies_to", [applies_to.value, FeeAppliesTo.ALL.value])
            .limit(1)
            .execute()
        )
        return SubscriptionDiscount.model_validate(rows[0]) if rows else None

    async def calculate_platform_fee(
        self,
        amount: Decimal,
        subscription_plan: Optional[str] = None,
        applies_to: FeeAppliesTo = FeeAppliesTo.BOOKINGS,
    ) -> FeeCalculation:
        """Fee breakdown for a transaction, including any subscription discount."""
        amount = round_money(amount)
        config = await self.get_active_config(applies_to) or self.fallback_config

        discount = None
        if subscription_plan and subscription_plan != "Free":
            discount = await self.get_subscription_discount(subscription_plan, applies_to)

        base_fee = calculate_fee(amount, config)
        reduction = apply_subscription_discount(base_fee, discount)
        final_fee = base_fee - reduction

        return FeeCalculation(
            transaction_amount=amount,
            base_fee=base_fee,
            discounts_applied=reduction,
            final_fee=final_fee,
            provider_payout=amount - final_fee,
            config_id=config.id,
            subscription_discount_id=discount.id if discount else None,
        )

    async def platform_fee_for(self, amount: Decimal) -> Decimal:
        config = await self.get_active_config() or self.fallback_config
        return min(calculate_fee(amount, config), round_money(amount))

    async def split_payment(self, amount: Decimal) -> tuple[Decimal, Decimal]:
        """Return ``(platform_fee, provider_payout)``; the two always sum to the amount."""
        amount = round_money(amount)
        fee = await self.platform_fee_for(amount)
        logger.debug("Payment split", extra={"amount": str(amount), "platform_fee": str(fee)})
        return fee, amount - fee
