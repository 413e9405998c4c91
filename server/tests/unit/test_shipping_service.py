"""Unit tests for shipping rates, addresses, shipments and local fulfilment."""

from datetime import date
from decimal import Decimal

import pytest

from marketplace.core.exceptions import NotFoundError, ValidationError
from marketplace.schemas.functions import CalculateShippingRatesRequest
from marketplace.schemas.shipping import (
    CreateShipmentRequest,
    CreateShippingAddressRequest,
    FulfillmentOption,
    UpdateShippingAddressRequest,
    UpdateTrackingRequest,
)
from marketplace.services.shipping_service import (
    ShippingService,
    add_business_days,
    billable_weight,
    calculate_pickup_dropoff_cost,
    calculate_shipping_rates,
    flag_quotes,
    shipping_zone,
)

from tests.conftest import CUSTOMER_ID, PROVIDER_ID

MONDAY = date(2026, 10, 19)


def rate_request(**overrides) -> CalculateShippingRatesRequest:
    fields = {
        "origin_zip": "10001",
        "destination_zip": "10099",
        "weight_oz": Decimal("16"),
        "dimensions": {"length": 1, "width": 1, "height": 1},
    }
    fields.update(overrides)
    return CalculateShippingRatesRequest(**fields)


def address(**overrides) -> CreateShippingAddressRequest:
    fields = {
        "full_name": "Casey Customer",
        "address_line1": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
    }
    fields.update(overrides)
    return CreateShippingAddressRequest(**fields)


@pytest.fixture
def shipping(backend, cache):
    return ShippingService(backend, cache)


@pytest.mark.parametrize(
    "origin, destination, zone",
    [("10001", "10099", 1), ("100", "150", 2), ("100", "250", 3), ("100", "251", 4), ("100", "700", 6), ("941", "100", 8)],
)
def test_shipping_zone(origin, destination, zone):
    assert shipping_zone(origin, destination) == zone


def test_shipping_zone_rejects_invalid_zip():
    with pytest.raises(ValidationError) as exc_info:
        shipping_zone("ab123", "10001")

    assert "originZip" in exc_info.value.extensions["errors"]


def test_billable_weight():
    assert billable_weight(Decimal("8"), 12, 12, 12) == 13
    assert billable_weight(Decimal("16"), 1, 1, 1) == 1
    assert billable_weight(Decimal("40"), 1, 1, 1) == 3
    assert billable_weight(Decimal("1"), 0, 0, 0) == 1


def test_add_business_days_skips_weekends():
    friday = date(2026, 10, 23)

    assert add_business_days(friday, 1) == date(2026, 10, 26)
    assert add_business_days(friday, 3) == date(2026, 10, 28)
    assert add_business_days(friday, 0) == friday


def test_rates_are_sorted_and_flagged():
    quotes = calculate_shipping_rates(rate_request(), MONDAY)

    assert [q.rate for q in quotes] == sorted(q.rate for q in quotes)
    assert len(quotes) == 9

    cheapest = [q for q in quotes if q.is_cheapest]
    fastest = [q for q in quotes if q.is_fastest]
    best_value = [q for q in quotes if q.is_best_value]
    assert len(cheapest) == len(fastest) == len(best_value) == 1

    assert (cheapest[0].carrier, cheapest[0].service_type, cheapest[0].rate) == ("USPS", "Ground Advantage", Decimal("5.40"))
    assert cheapest[0].delivery_days == 2
    assert cheapest[0].delivery_date == date(2026, 10, 21)
    assert (fastest[0].service_type, fastest[0].rate, fastest[0].delivery_days) == ("Priority Mail", Decimal("8.70"), 1)
    assert best_value[0] is cheapest[0]


def test_rates_grow_with_zone_and_weight():
    near = calculate_shipping_rates(rate_request(), MONDAY)[0]
    far_heavy = calculate_shipping_rates(
        rate_request(destination_zip="941", weight_oz=Decimal("48")), MONDAY
    )[0]

    assert far_heavy.service_type == "Ground Advantage"
    assert far_heavy.rate == Decimal("9.20")
    assert far_heavy.delivery_days == 5
    assert far_heavy.rate > near.rate


def test_fulfillment_window_delays_delivery():
    quotes = calculate_shipping_rates(rate_request(fulfillment_window_days=3), MONDAY)
    ground_advantage = next(q for q in quotes if q.service_type == "Ground Advantage")

    assert ground_advantage.delivery_date == date(2026, 10, 26)


def test_carrier_preference_limits_quotes():
    quotes = calculate_shipping_rates(rate_request(carrier_preference=["UPS"]), MONDAY)

    assert {q.carrier.value for q in quotes} == {"UPS"}
    assert len(quotes) == 3
    assert quotes[0].service_type == "Ground"
    assert quotes[0].is_cheapest and quotes[0].is_fastest and quotes[0].is_best_value


def test_flag_quotes_empty():
    assert flag_quotes([]) == []


@pytest.mark.asyncio
async def test_get_rates_uses_cache(shipping, cache):
    first = await shipping.get_rates(rate_request(), today=MONDAY)
    second = await shipping.get_rates(rate_request(), today=MONDAY)

    assert first == second
    assert cache.stats()["memory_hits"] == 1
    assert second[0].rate == Decimal("5.40")


@pytest.mark.asyncio
async def test_get_rates_without_cache(backend):
    quotes = await ShippingService(backend).get_rates(rate_request(), today=MONDAY)

    assert quotes[0].is_cheapest


def test_pickup_dropoff_cost():
    option = FulfillmentOption(
        listing_id="listing-1",
        fulfillment_type="PickupDropOff",
        base_cost=Decimal("10"),
        cost_per_mile=Decimal("1.25"),
        cost_per_pound=Decimal("0.5"),
    )

    assert calculate_pickup_dropoff_cost(option, Decimal("8"), Decimal("4"), 2) == Decimal("44.00")
    assert calculate_pickup_dropoff_cost(
        option.model_copy(update={"base_cost": Decimal("-50")}), Decimal("1"), Decimal("0"), 1
    ) == Decimal("0.00")


@pytest.mark.asyncio
async def test_fulfillment_options(shipping, backend):
    created = await shipping.create_fulfillment_option(FulfillmentOption(
        listing_id="listing-1", fulfillment_type="Pickup", base_cost=Decimal("5"), cost_per_mile=Decimal("2"),
    ))
    await shipping.create_fulfillment_option(FulfillmentOption(
        listing_id="listing-1", fulfillment_type="DropOff", is_active=False,
    ))

    options = await shipping.list_fulfillment_options("listing-1")

    assert [option.id for option in options] == [created.id]
    assert await shipping.quote_pickup_dropoff(created.id, Decimal("3"), Decimal("0")) == Decimal("11.00")

    with pytest.raises(NotFoundError):
        await shipping.quote_pickup_dropoff("missing", Decimal("1"), Decimal("1"))


@pytest.mark.asyncio
async def test_new_default_address_replaces_previous(shipping):
    home = await shipping.create_address(CUSTOMER_ID, address(is_default=True))
    work = await shipping.create_address(CUSTOMER_ID, address(label="Work", is_default=True))
    await shipping.create_address(CUSTOMER_ID, address(label="Cabin"))
    await shipping.create_address(PROVIDER_ID, address(is_default=True))

    addresses = await shipping.list_addresses(CUSTOMER_ID)
    default = await shipping.get_default_address(CUSTOMER_ID)

    assert [a.label for a in addresses] == ["Work", "Cabin", "Home"]
    assert default.id == work.id
    assert not next(a for a in addresses if a.id == home.id).is_default


@pytest.mark.asyncio
async def test_update_address(shipping):
    created = await shipping.create_address(CUSTOMER_ID, address())

    updated = await shipping.update_address(
        CUSTOMER_ID, created.id, UpdateShippingAddressRequest(city="Chicago")
    )

    assert updated.city == "Chicago"
    assert updated.full_name == "Casey Customer"
    assert updated.updated_at is not None


@pytest.mark.asyncio
async def test_update_address_requires_changes(shipping):
    created = await shipping.create_address(CUSTOMER_ID, address())

    with pytest.raises(ValidationError):
        await shipping.update_address(CUSTOMER_ID, created.id, UpdateShippingAddressRequest())


@pytest.mark.asyncio
async def test_addresses_are_private(shipping):
    created = await shipping.create_address(CUSTOMER_ID, address())

    with pytest.raises(NotFoundError):
        await shipping.update_address(PROVIDER_ID, created.id, UpdateShippingAddressRequest(city="Elsewhere"))
    with pytest.raises(NotFoundError):
        await shipping.delete_address(PROVIDER_ID, created.id)

    await shipping.delete_address(CUSTOMER_ID, created.id)
    assert await shipping.list_addresses(CUSTOMER_ID) == []


def shipment_request() -> CreateShipmentRequest:
    return CreateShipmentRequest(
        booking_id="booking-1",
        carrier="USPS",
        origin_address={"postal_code": "10001"},
        destination_address={"postal_code": "94103"},
        weight_oz=Decimal("24"),
        dimensions={"length": 10, "width": 8, "height": 4},
        shipping_cost=Decimal("9.2"),
    )


@pytest.mark.asyncio
async def test_shipment_lifecycle(shipping, backend):
    backend.seed("bookings", {"id": "booking-1", "customer_id": CUSTOMER_ID, "status": "Confirmed"})

    shipment = await shipping.create_shipment(shipment_request())
    assert shipment.status == "Pending"
    assert shipment.shipping_cost == Decimal("9.20")

    in_transit = await shipping.update_tracking(shipment.id, UpdateTrackingRequest(tracking_number="9400100000000"))
    assert in_transit.status == "InTransit"
    assert in_transit.tracking_number == "9400100000000"

    found = await shipping.get_shipment_for_booking("booking-1")
    assert found.id == shipment.id

    delivered = await shipping.confirm_delivery(shipment.id, "https://cdn.mail.com/proof.jpg", today=date(2026, 10, 22))
    assert delivered.status == "Delivered"
    assert delivered.actual_delivery_date == date(2026, 10, 22)
    assert delivered.proof_of_delivery_url == "https://cdn.mail.com/proof.jpg"
    assert backend.row("bookings", "booking-1")["delivery_confirmed_at"] is not None


@pytest.mark.asyncio
async def test_unknown_shipment(shipping):
    with pytest.raises(NotFoundError):
        await shipping.get_shipment("missing")
    with pytest.raises(NotFoundError):
        await shipping.update_tracking("missing", UpdateTrackingRequest(tracking_number="1Z"))
    with pytest.raises(NotFoundError):
        await shipping.confirm_delivery("missing")
    assert await shipping.get_shipment_for_booking("missing") is None


@pytest.mark.asyncio
async def test_track_shipment_without_tracking_number(shipping, backend):
    shipment = await shipping.create_shipment(shipment_request())

    tracking = await shipping.track_shipment(shipment.id)

    assert tracking == {"status": "Pending", "events": [], "estimated_delivery": None}
    assert backend.invocations == []


@pytest.mark.asyncio
async def test_track_shipment_live(shipping, backend):
    shipment = await shipping.create_shipment(shipment_request())
    await shipping.update_tracking(shipment.id, UpdateTrackingRequest(tracking_number="1Z999"))
    backend.on_invoke("track-shipment", lambda body: {"status": "OutForDelivery", "tracking": body["trackingNumber"]})

    tracking = await shipping.track_shipment(shipment.id)

    assert tracking == {"status": "OutForDelivery", "tracking": "1Z999"}


@pytest.mark.asyncio
async def test_track_shipment_falls_back_to_stored_status(shipping):
    shipment = await shipping.create_shipment(shipment_request())
    await shipping.update_tracking(shipment.id, UpdateTrackingRequest(tracking_number="1Z999"))

    tracking = await shipping.track_shipment(shipment.id)

    assert tracking["status"] == "InTransit"
