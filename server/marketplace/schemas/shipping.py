"""Shipping, address and fulfilment Pydantic schemas."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .common import CamelModel, Money


class Carrier(str, Enum):
    USPS = "USPS"
    UPS = "UPS"
    FEDEX = "FedEx"


class ShipmentStatus(str, Enum):
    """Shipment lifecycle: Pending -> InTransit -> OutForDelivery -> Delivered."""
    PENDING = "Pending"
    IN_TRANSIT = "InTransit"
    OUT_FOR_DELIVERY = "OutForDelivery"
    DELIVERED = "Delivered"
    EXCEPTION = "Exception"
    CANCELLED = "Cancelled"


class FulfillmentType(str, Enum):
    PICKUP = "Pickup"
    DROP_OFF = "DropOff"
    PICKUP_DROP_OFF = "PickupDropOff"
    SHIPPING = "Shipping"


class Dimensions(BaseModel):
    """Package dimensions in inches."""

    length: Decimal = Field(..., ge=0)
    width: Decimal = Field(..., ge=0)
    height: Decimal = Field(..., ge=0)


class ShippingRateQuote(CamelModel):
    """One carrier service offer for a package."""

    carrier: Carrier
    service_type: str
    rate: Money
    delivery_days: int
    delivery_date: date
    is_fastest: bool = False
    is_cheapest: bool = False
    is_best_value: bool = False


class ShippingAddressBase(BaseModel):
    label: str = Field("Home", max_length=50)
    full_name: str = Field(..., min_length=1, max_length=255)
    address_line1: str = Field(..., min_length=1, max_length=255)
    address_line2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field("US", min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=30)
    is_default: bool = False


class CreateShippingAddressRequest(ShippingAddressBase):
    pass


class UpdateShippingAddressRequest(BaseModel):
    """Partial address update; only the fields sent are changed."""

    label: Optional[str] = Field(None, max_length=50)
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    address_line1: Optional[str] = Field(None, min_length=1, max_length=255)
    address_line2: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, min_length=1, max_length=100)
    postal_code: Optional[str] = Field(None, min_length=1, max_length=20)
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=30)
    is_default: Optional[bool] = None


class ShippingAddress(ShippingAddressBase):
    id: str
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CreateShipmentRequest(BaseModel):
    booking_id: str
    carrier: str = Field(..., min_length=1, max_length=50)
    origin_address: dict[str, Any]
    destination_address: dict[str, Any]
    weight_oz: Decimal = Field(..., gt=0)
    dimensions: Dimensions
    shipping_cost: Decimal = Field(..., ge=0)
    estimated_delivery_date: Optional[date] = None


class UpdateTrackingRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=100)
    carrier: Optional[str] = Field(None, max_length=50)


class ConfirmDeliveryRequest(BaseModel):
    proof_of_delivery_url: Optional[str] = Field(None, max_length=2048)


class Shipment(BaseModel):
    id: str
    booking_id: str
    carrier: str
    tracking_number: Optional[str] = None
    shipping_label_url: Optional[str] = None
    origin_address: dict[str, Any] = Field(default_factory=dict)
    destination_address: dict[str, Any] = Field(default_factory=dict)
    weight_oz: Decimal
    dimensions: Optional[dict[str, Any]] = None
    shipping_cost: Decimal
    estimated_delivery_date: Optional[date] = None
    actual_delivery_date: Optional[date] = None
    status: ShipmentStatus = ShipmentStatus.PENDING
    tracking_events: List[dict[str, Any]] = Field(default_factory=list)
    proof_of_delivery_url: Optional[str] = None
    created_at: Optional[datetime] = None


class FulfillmentOption(BaseModel):
    """How a listing can reach the customer and what it costs."""

    id: Optional[str] = None
    listing_id: str
    fulfillment_type: FulfillmentType
    shipping_mode: Optional[str] = None
    base_cost: Decimal = Decimal("0")
    cost_per_mile: Decimal = Decimal("0")
    cost_per_pound: Decimal = Decimal("0")
    estimated_days_min: int = 1
    estimated_days_max: int = 7
    carrier_preference: List[str] = Field(default_factory=list)
    is_active: bool = True


class PickupDropoffCostRequest(BaseModel):
    fulfillment_option_id: str
    distance_miles: Decimal = Field(..., ge=0)
    weight_lbs: Decimal = Field(Decimal("0"), ge=0)
    quantity: int = Field(1, ge=1)


class PickupDropoffCost(BaseModel):
    fulfillment_option_id: str
    cost: Decimal
