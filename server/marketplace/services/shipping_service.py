"""Shipping rate estimation, addresses, shipments and local fulfilment pricing."""

import hashlib
import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

from ..backend import Backend
from ..backend.rows import utcnow
from ..cache import TwoTierCache
from ..core.exceptions import BackendError, NotFoundError, ValidationError
from ..core.observability import MetricsCollector
from ..schemas.functions import CalculateShippingRatesRequest
from ..schemas.shipping import (
    Carrier,
    CreateShipmentRequest,
    CreateShippingAddressRequest,
    FulfillmentOption,
    Shipment,
    ShipmentStatus,
    ShippingAddress,
    ShippingRateQuote,
    UpdateShippingAddressRequest,
    UpdateTrackingRequest,
)
from .fee_service import round_money

logger = logging.getLogger(__name__)

ADDRESSES_TABLE = "shipping_addresses"
SHIPMENTS_TABLE = "shipments"
FULFILLMENT_TABLE = "fulfillment_options"

DIMENSIONAL_DIVISOR = Decimal("139")
OUNCES_PER_POUND = Decimal("16")
# Waiting one more day is treated as worth this much when picking the best value.
DAY_VALUE = Decimal("1.50")

# Upper bound of the 3-digit zip prefix distance for zones 1-7; beyond is zone 8.
ZONE_LIMITS = (0, 50, 150, 300, 450, 600, 750)


@dataclass(frozen=True)
class CarrierService:
    carrier: Carrier
    service_type: str
    base_rate: Decimal
    per_pound: Decimal
    per_zone: Decimal
    min_days: int
    max_days: int

    def rate(self, billable_lbs: int, zone: int) -> Decimal:
        return round_money(
            self.base_rate + self.per_pound * (billable_lbs - 1) + self.per_zone * (zone - 1)
        )

    def delivery_days(self, zone: int) -> int:
        return self.min_days + (zone - 1) * (self.max_days - self.min_days) // 7


CARRIER_SERVICES = (
    CarrierService(Carrier.USPS, "Ground Advantage", Decimal("5.40"), Decimal("0.50"), Decimal("0.40"), 2, 5),
    CarrierService(Carrier.USPS, "Priority Mail", Decimal("8.70"), Decimal("0.85"), Decimal("0.75"), 1, 3),
    CarrierService(Carrier.USPS, "Priority Mail Express", Decimal("28.75"), Decimal("1.60"), Decimal("1.50"), 1, 2),
    CarrierService(Carrier.UPS, "Ground", Decimal("10.20"), Decimal("0.70"), Decimal("0.55"), 1, 5),
    CarrierService(Carrier.UPS, "2nd Day Air", Decimal("21.50"), Decimal("1.80"), Decimal("1.20"), 2, 2),
    CarrierService(Carrier.UPS, "Next Day Air", Decimal("34.00"), Decimal("2.90"), Decimal("2.10"), 1, 1),
    CarrierService(Carrier.FEDEX, "Ground", Decimal("10.00"), Decimal("0.68"), Decimal("0.55"), 1, 5),
    CarrierService(Carrier.FEDEX, "Express Saver", Decimal("19.80"), Decimal("1.55"), Decimal("1.10"), 3, 3),
    CarrierService(Carrier.FEDEX, "Standard Overnight", Decimal("32.50"), Decimal("2.75"), Decimal("2.00"), 1, 1),
)


def _zip_prefix(zip_code: str, field: str) -> int:
    digits = zip_code.strip()[:3]
    if len(digits) < 3 or not digits.isdigit():
        raise ValidationError(detail=f"Invalid zip code: {zip_code}", errors={field: "must start with 3 digits"})
    return int(digits)


def shipping_zone(origin_zip: str, destination_zip: str) -> int:
    """Zone 1-8 from the distance between 3-digit zip prefixes."""
    distance = abs(_zip_prefix(origin_zip, "originZip") - _zip_prefix(destination_zip, "destinationZip"))
    for zone, limit in enumerate(ZONE_LIMITS, start=1):
        if distance <= limit:
            return zone
    return 8


def billable_weight(weight_oz: Decimal, length: Decimal, width: Decimal, height: Decimal) -> int:
    """Whole pounds billed: the larger of actual and dimensional weight, rounded up, at least 1."""
    actual = Decimal(weight_oz) / OUNCES_PER_POUND
    dimensional = Decimal(length) * Decimal(width) * Decimal(height) / DIMENSIONAL_DIVISOR
    return max(1, math.ceil(max(actual, dimensional)))


def add_business_days(start: date, days: int) -> date:
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


def flag_quotes(quotes: list[ShippingRateQuote]) -> list[ShippingRateQuote]:
    """Mark the cheapest, the fastest and the best value quote (one each)."""
    if not quotes:
        return quotes

    cheapest = min(quotes, key=lambda q: (q.rate, q.delivery_days))
    fastest = min(quotes, key=lambda q: (q.delivery_days, q.rate))
    best_value = min(quotes, key=lambda q: (q.rate + DAY_VALUE * q.delivery_days, q.delivery_days))

    return [
        quote.model_copy(update={
            "is_cheapest": quote is cheapest,
            "is_fastest": quote is fastest,
            "is_best_value": quote is best_value,
        })
        for quote in quotes
    ]


def calculate_shipping_rates(request: CalculateShippingRatesRequest, today: date) -> list[ShippingRateQuote]:
    """Deterministic quotes for every carrier service allowed by the request, cheapest first."""
    zone = shipping_zone(request.origin_zip, request.destination_zip)
    dims = request.dimensions
    pounds = billable_weight(request.weight_oz, dims.length, dims.width, dims.height)
    carriers = set(request.carrier_preference or Carrier)

    quotes = []
    for service in CARRIER_SERVICES:
        if service.carrier not in carriers:
            continue
        days = service.delivery_days(zone)
        quotes.append(ShippingRateQuote(
            carrier=service.carrier,
            service_type=service.service_type,
            rate=service.rate(pounds, zone),
            delivery_days=days,
            delivery_date=add_business_days(today, request.fulfillment_window_days + days),
        ))

    quotes.sort(key=lambda q: (q.rate, q.delivery_days))
    return flag_quotes(quotes)


def rates_cache_key(request: CalculateShippingRatesRequest, today: date) -> str:
    dims = request.dimensions
    dimensions_hash = hashlib.sha256(f"{dims.length}x{dims.width}x{dims.height}".encode()).hexdigest()[:12]
    carriers = ",".join(sorted(c.value for c in request.carrier_preference or Carrier))
    return (
        f"shipping:rates:{request.origin_zip}:{request.destination_zip}:{request.weight_oz}:"
        f"{dimensions_hash}:{carriers}:{request.fulfillment_window_days}:{today.isoformat()}"
    )


def calculate_pickup_dropoff_cost(
    option: FulfillmentOption,
    distance_miles: Decimal,
    weight_lbs: Decimal,
    quantity: int,
) -> Decimal:
    """(base + miles x per-mile + pounds x per-pound) x quantity, never negative."""
    per_unit = (
        option.base_cost
        + Decimal(distance_miles) * option.cost_per_mile
        + Decimal(weight_lbs) * option.cost_per_pound
    )
    return round_money(max(per_unit * quantity, Decimal("0")))


class ShippingService:
    def __init__(self, backend: Backend, cache: Optional[TwoTierCache] = None, rate_ttl: int = 3600):
        self.backend = backend
        self.cache = cache
        self.rate_ttl = rate_ttl

    # Rates

    async def get_rates(
        self,
        request: CalculateShippingRatesRequest,
        today: Optional[date] = None,
    ) -> list[ShippingRateQuote]:
        today = today or utcnow().date()
        if self.cache is None:
            MetricsCollector.record_shipping_quote("computed")
            return calculate_shipping_rates(request, today)

        computed = False

        async def compute() -> list[dict[str, Any]]:
            nonlocal computed
            computed = True
            return [
                {**quote.model_dump(mode="json"), "rate": str(quote.rate)}
                for quote in calculate_shipping_rates(request, today)
            ]

        rows = await self.cache.get_or_set(rates_cache_key(request, today), compute, ttl=self.rate_ttl)
        MetricsCollector.record_shipping_quote("computed" if computed else "cache")
        return [ShippingRateQuote.model_validate(row) for row in rows]

    # Addresses

    async def list_addresses(self, user_id: str) -> list[ShippingAddress]:
        """Default address first, then newest."""
        rows = await (
            self.backend.table(ADDRESSES_TABLE)
            .select()
            .eq("user_id", user_id)
            .order("is_default", ascending=False)
            .order("created_at", ascending=False)
            .execute()
        ) or []
        return [ShippingAddress.model_validate(row) for row in rows]

    async def get_default_address(self, user_id: str) -> Optional[ShippingAddress]:
        row = await (
            self.backend.table(ADDRESSES_TABLE)
            .select()
            .eq("user_id", user_id)
            .eq("is_default", True)
            .maybe_single()
            .execute()
        )
        return ShippingAddress.model_validate(row) if row else None

    async def _clear_default(self, user_id: str) -> None:
        await (
            self.backend.table(ADDRESSES_TABLE)
            .update({"is_default": False})
            .eq("user_id", user_id)
            .eq("is_default", True)
            .execute()
        )

    async def create_address(self, user_id: str, request: CreateShippingAddressRequest) -> ShippingAddress:
        if request.is_default:
            await self._clear_default(user_id)

        row = await (
            self.backend.table(ADDRESSES_TABLE)
            .insert({**request.model_dump(), "user_id": user_id})
            .select()
            .single()
            .execute()
        )
        return ShippingAddress.model_validate(row)

    async def update_address(
        self,
        user_id: str,
        address_id: str,
        request: UpdateShippingAddressRequest,
    ) -> ShippingAddress:
        changes = request.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError(detail="No fields to update")
        if changes.get("is_default"):
            await self._clear_default(user_id)

        rows = await (
            self.backend.table(ADDRESSES_TABLE)
            .update({**changes, "updated_at": utcnow()})
            .eq("id", address_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not rows:
            raise NotFoundError("shipping address", address_id)
        return ShippingAddress.model_validate(rows[0])

    async def delete_address(self, user_id: str, address_id: str) -> None:
        rows = await (
            self.backend.table(ADDRESSES_TABLE)
            .delete()
            .eq("id", address_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not rows:
            raise NotFoundError("shipping address", address_id)

    # Shipments

    async def create_shipment(self, request: CreateShipmentRequest) -> Shipment:
        row = await (
            self.backend.table(SHIPMENTS_TABLE)
            .insert({
                "booking_id": request.booking_id,
                "carrier": request.carrier,
                "origin_address": request.origin_address,
                "destination_address": request.destination_address,
                "weight_oz": request.weight_oz,
                "dimensions": request.dimensions.model_dump(mode="json"),
                "shipping_cost": round_money(request.shipping_cost),
                "estimated_delivery_date": request.estimated_delivery_date,
                "status": ShipmentStatus.PENDING.value,
                "tracking_events": [],
            })
            .select()
            .single()
            .execute()
        )
        logger.info("Shipment created", extra={"shipment_id": row["id"], "booking_id": request.booking_id})
        return Shipment.model_validate(row)

    async def get_shipment(self, shipment_id: str) -> Shipment:
        row = await self.backend.table(SHIPMENTS_TABLE).select().eq("id", shipment_id).maybe_single().execute()
        if row is None:
            raise NotFoundError("shipment", shipment_id)
        return Shipment.model_validate(row)

    async def update_tracking(self, shipment_id: str, request: UpdateTrackingRequest) -> Shipment:
        """Attach a tracking number; the shipment is then in transit."""
        values: dict[str, Any] = {
            "tracking_number": request.tracking_number,
            "status": ShipmentStatus.IN_TRANSIT.value,
            "updated_at": utcnow(),
        }
        if request.carrier:
            values["carrier"] = request.carrier

        rows = await self.backend.table(SHIPMENTS_TABLE).update(values).eq("id", shipment_id).execute()
        if not rows:
            raise NotFoundError("shipment", shipment_id)
        return Shipment.model_validate(rows[0])

    async def get_shipment_for_booking(self, booking_id: str) -> Optional[Shipment]:
        row = await (
            self.backend.table(SHIPMENTS_TABLE)
            .select()
            .eq("booking_id", booking_id)
            .order("created_at", ascending=False)
            .limit(1)
            .maybe_single()
            .execute()
        )
        return Shipment.model_validate(row) if row else None

    async def track_shipment(self, shipment_id: str) -> dict[str, Any]:
        """
        Live tracking from the carrier integration function, falling back to
        the stored status and events when the function is unavailable.
        """
        shipment = await self.get_shipment(shipment_id)
        stored = {
            "status": shipment.status.value,
            "events": shipment.tracking_events,
            "estimated_delivery": shipment.estimated_delivery_date,
        }
        if not shipment.tracking_number:
            return stored

        try:
            return await self.backend.invoke(
                "track-shipment",
                {
                    "shipmentId": shipment.id,
                    "trackingNumber": shipment.tracking_number,
                    "carrier": shipment.carrier,
                },
            )
        except BackendError as e:
            logger.warning("Live tracking unavailable", extra={"shipment_id": shipment_id, "error": str(e)})
            return stored

    async def confirm_delivery(
        self,
        shipment_id: str,
        proof_url: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Shipment:
        """Mark delivered and stamp the booking's delivery confirmation."""
        now = utcnow()
        rows = await (
            self.backend.table(SHIPMENTS_TABLE)
            .update({
                "status": ShipmentStatus.DELIVERED.value,
                "actual_delivery_date": today or now.date(),
                "proof_of_delivery_url": proof_url,
                "updated_at": now,
            })
            .eq("id", shipment_id)
            .execute()
        )
        if not rows:
            raise NotFoundError("shipment", shipment_id)

        shipment = Shipment.model_validate(rows[0])
        await (
            self.backend.table("bookings")
            .update({"delivery_confirmed_at": now})
            .eq("id", shipment.booking_id)
            .execute()
        )
        logger.info("Delivery confirmed", extra={"shipment_id": shipment_id, "booking_id": shipment.booking_id})
        return shipment

    # Fulfilment options

    async def list_fulfillment_options(self, listing_id: str) -> list[FulfillmentOption]:
        rows = await (
            self.backend.table(FULFILLMENT_TABLE)
            .select()
            .eq("listing_id", listing_id)
            .eq("is_active", True)
            .order("fulfillment_type")
            .execute()
        ) or []
        return [FulfillmentOption.model_validate(row) for row in rows]

    async def get_fulfillment_option(self, option_id: str) -> FulfillmentOption:
        row = await self.backend.table(FULFILLMENT_TABLE).select().eq("id", option_id).maybe_single().execute()
        if row is None:
            raise NotFoundError("fulfillment option", option_id)
        return FulfillmentOption.model_validate(row)

    async def create_fulfillment_option(self, option: FulfillmentOption) -> FulfillmentOption:
        row = await (
            self.backend.table(FULFILLMENT_TABLE)
            .insert(option.model_dump(mode="json", exclude={"id"}))
            .select()
            .single()
            .execute()
        )
        return FulfillmentOption.model_validate(row)

    async def quote_pickup_dropoff(
        self,
        option_id: str,
        distance_miles: Decimal,
        weight_lbs: Decimal,
        quantity: int = 1,
    ) -> Decimal:
        option = await self.get_fulfillment_option(option_id)
        return calculate_pickup_dropoff_cost(option, distance_miles, weight_lbs, quantity)
