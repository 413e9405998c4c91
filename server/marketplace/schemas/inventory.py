"""Inventory-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LockType(str, Enum):
    """Soft locks expire on their own; hard locks are tied to a booking or order."""
    SOFT = "soft"
    HARD = "hard"


class LockStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    EXPIRED = "expired"


class InventoryItem(BaseModel):
    """Provider inventory item response schema."""

    id: str
    provider_id: str
    name: str
    description: Optional[str] = None
    sku: Optional[str] = None
    total_quantity: int
    buffer_quantity: int = 0
    is_rentable: bool = False
    turnaround_buffer_hours: int = 0
    turnaround_hours: int = 0
    default_rental_price: Optional[Decimal] = None
    location_address: Optional[str] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    low_stock_threshold: int = 0
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CreateInventoryItemRequest(BaseModel):
    """Request schema for creating an inventory item."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    sku: Optional[str] = Field(None, max_length=100)
    total_quantity: int = Field(..., ge=0, description="Units owned")
    buffer_quantity: int = Field(0, ge=0, description="Units held back from booking")
    is_rentable: bool = False
    turnaround_buffer_hours: Optional[int] = Field(None, ge=0)
    turnaround_hours: Optional[int] = Field(None, ge=0, description="Cleaning/prep time after a return")
    default_rental_price: Optional[Decimal] = Field(None, ge=0)
    location_address: Optional[str] = None
    location_lat: Optional[float] = Field(None, ge=-90, le=90)
    location_lng: Optional[float] = Field(None, ge=-180, le=180)
    low_stock_threshold: int = Field(0, ge=0)
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UpdateInventoryItemRequest(BaseModel):
    """Partial update; only fields that are set are written."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    sku: Optional[str] = Field(None, max_length=100)
    total_quantity: Optional[int] = Field(None, ge=0)
    buffer_quantity: Optional[int] = Field(None, ge=0)
    is_rentable: Optional[bool] = None
    turnaround_buffer_hours: Optional[int] = Field(None, ge=0)
    turnaround_hours: Optional[int] = Field(None, ge=0)
    default_rental_price: Optional[Decimal] = Field(None, ge=0)
    location_address: Optional[str] = None
    location_lat: Optional[float] = Field(None, ge=-90, le=90)
    location_lng: Optional[float] = Field(None, ge=-180, le=180)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class AvailabilityConflict(BaseModel):
    lock_id: str
    pickup_at: Optional[datetime] = None
    dropoff_at: Optional[datetime] = None
    quantity: int


class InventoryAvailability(BaseModel):
    """Result of the backend availability procedure."""

    available: bool
    available_quantity: int = 0
    requested_quantity: int = 0
    conflicts: List[AvailabilityConflict] = Field(default_factory=list)
    reason: Optional[str] = None


class CreateLockRequest(BaseModel):
    """Request schema for reserving inventory."""

    inventory_item_id: str
    quantity: int = Field(..., ge=1)
    lock_type: LockType = LockType.SOFT
    booking_id: Optional[str] = None
    production_order_id: Optional[str] = None
    service_listing_id: Optional[str] = None
    pickup_at: Optional[datetime] = None
    dropoff_at: Optional[datetime] = None
    soft_lock_minutes: int = Field(30, ge=1, le=24 * 60, description="Lifetime of a soft lock")


class CreateLockResult(BaseModel):
    success: bool
    lock_id: Optional[str] = None
    error: Optional[str] = None
    dropoff_at_effective: Optional[datetime] = None
    soft_lock_expires_at: Optional[datetime] = None
    availability: Optional[InventoryAvailability] = None


class UpgradeLockRequest(BaseModel):
    booking_id: Optional[str] = None
    production_order_id: Optional[str] = None


class ReleaseLockRequest(BaseModel):
    reason: str = Field("manual_release", min_length=1, max_length=255)


class LockActionResult(BaseModel):
    success: bool
    error: Optional[str] = None


class InventoryLock(BaseModel):
    """Inventory lock response schema."""

    id: str
    inventory_item_id: str
    service_listing_id: Optional[str] = None
    booking_id: Optional[str] = None
    production_order_id: Optional[str] = None
    quantity: int
    pickup_at: Optional[datetime] = None
    dropoff_at: Optional[datetime] = None
    dropoff_at_effective: Optional[datetime] = None
    lock_type: LockType
    status: LockStatus
    soft_lock_expires_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    released_at: Optional[datetime] = None
    released_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class InventoryAlert(BaseModel):
    id: str
    provider_id: str
    inventory_item_id: str
    alert_type: str
    current_available: int
    threshold: int
    message: Optional[str] = None
    is_read: bool = False
    is_dismissed: bool = False
    triggered_at: datetime
    read_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None


class InventoryStats(BaseModel):
    """Aggregate inventory figures for a provider."""

    total_items: int = 0
    total_quantity: int = 0
    total_available: int = 0
    active_rentals: int = 0
    active_locks: int = 0
    low_stock_items: int = 0
    out_of_stock_items: int = 0


class ScheduledHandover(BaseModel):
    lock: InventoryLock
    item_name: str


class UpcomingHandovers(BaseModel):
    """Pickups and returns due within a window, soonest first."""

    pickups: List[ScheduledHandover] = Field(default_factory=list)
    returns: List[ScheduledHandover] = Field(default_factory=list)


class InventoryStatusLevel(str, Enum):
    AVAILABLE = "available"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class InventoryStatus(BaseModel):
    status: InventoryStatusLevel
    label: str
    color: str


class RentalDuration(BaseModel):
    hours: int
    days: int
    display_text: str
