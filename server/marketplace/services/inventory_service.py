"""Provider inventory and inventory locking.

Lock creation, upgrade and release are atomic procedures on the backend;
this service validates input, calls them, and keeps the per-provider item
cache coherent.
"""

import asyncio
import logging
import math
from datetime import date, datetime, timedelta
from typing import Any, Optional

from ..backend import Backend
from ..backend.rows import parse_datetime, utcnow
from ..cache import TwoTierCache, cached
from ..core.exceptions import AuthorizationError, NotFoundError, ValidationError
from ..schemas.inventory import (
    CreateInventoryItemRequest,
    CreateLockRequest,
    CreateLockResult,
    InventoryAlert,
    InventoryAvailability,
    InventoryItem,
    InventoryLock,
    InventoryStats,
    InventoryStatus,
    InventoryStatusLevel,
    LockActionResult,
    LockStatus,
    RentalDuration,
    ScheduledHandover,
    UpcomingHandovers,
    UpdateInventoryItemRequest,
)

logger = logging.getLogger(__name__)

ITEMS_TABLE = "provider_inventory_items"
LOCKS_TABLE = "inventory_locks"
ALERTS_TABLE = "inventory_alerts"

ITEM_CACHE_TTL_SECONDS = 120
DEFAULT_SOFT_LOCK_MINUTES = 30
DEFAULT_RELEASE_REASON = "manual_release"


def items_cache_key(provider_id: str) -> str:
    return f"inventory:{provider_id}:items"


class InventoryService:
    """Service for provider inventory items, locks and alerts."""

    def __init__(self, backend: Backend, cache: Optional[TwoTierCache] = None):
        self.backend = backend
        self.cache = cache

    # Items

    @cached(items_cache_key, ttl=ITEM_CACHE_TTL_SECONDS)
    async def _active_item_rows(self, provider_id: str) -> list[dict[str, Any]]:
        rows = await (
            self.backend.table(ITEMS_TABLE)
            .select()
            .eq("provider_id", provider_id)
            .eq("is_active", True)
            .order("name")
            .execute()
        )
        return rows or []

    async def list_items(self, provider_id: str) -> list[InventoryItem]:
        """Active items of a provider ordered by name."""
        return [InventoryItem.model_validate(row) for row in await self._active_item_rows(provider_id)]

    async def get_item(self, item_id: str) -> InventoryItem:
        row = await self.backend.table(ITEMS_TABLE).select().eq("id", item_id).maybe_single().execute()
        if row is None:
            raise NotFoundError("inventory item", item_id)
        return InventoryItem.model_validate(row)

    async def _get_owned_item(self, item_id: str, provider_id: Optional[str]) -> InventoryItem:
        item = await self.get_item(item_id)
        if provider_id is not None and item.provider_id != provider_id:
            raise AuthorizationError("Inventory item belongs to another provider")
        return item

    async def create_item(self, provider_id: str, request: CreateInventoryItemRequest) -> InventoryItem:
        """Create an active inventory item for a provider."""
        turnaround = request.turnaround_hours
        if turnaround is None:
            turnaround = request.turnaround_buffer_hours or 0

        if request.buffer_quantity > request.total_quantity:
            raise ValidationError(
                "Buffer quantity cannot exceed total quantity",
                errors={"buffer_quantity": "must not exceed total_quantity"},
            )

        row = await (
            self.backend.table(ITEMS_TABLE)
            .insert({
                "provider_id": provider_id,
                "name": request.name,
                "description": request.description,
                "sku": request.sku,
                "total_quantity": request.total_quantity,
                "buffer_quantity": request.buffer_quantity,
                "is_rentable": request.is_rentable,
                "turnaround_buffer_hours": turnaround,
                "turnaround_hours": turnaround,
                "default_rental_price": request.default_rental_price,
                "location_address": request.location_address,
                "location_lat": request.location_lat,
                "location_lng": request.location_lng,
                "low_stock_threshold": request.low_stock_threshold,
                "image_url": request.image_url,
                "metadata": request.metadata,
                "is_active": True,
            })
            .select()
            .single()
            .execute()
        )

        await self._invalidate_provider(provider_id)
        logger.info(
            "Inventory item created",
            extra={"item_id": row["id"], "provider_id": provider_id, "total_quantity": request.total_quantity},
        )
        return InventoryItem.model_validate(row)

    async def update_item(
        self,
        item_id: str,
        request: UpdateInventoryItemRequest,
        provider_id: Optional[str] = None,
    ) -> InventoryItem:
        """Apply the fields set on ``request``; turnaround hours are kept in both columns."""
        item = await self._get_owned_item(item_id, provider_id)

        values = request.model_dump(exclude_unset=True)
        if "turnaround_hours" in values:
            values["turnaround_buffer_hours"] = values["turnaround_hours"]
        if not values:
            return item

        row = await (
            self.backend.table(ITEMS_TABLE)
            .update(values)
            .eq("id", item_id)
            .select()
            .single()
            .execute()
        )

        await self._invalidate_provider(item.provider_id)
        logger.info("Inventory item updated", extra={"item_id": item_id, "fields": sorted(values)})
        return InventoryItem.model_validate(row)

    async def delete_item(self, item_id: str, provider_id: Optional[str] = None) -> None:
        """Soft delete: the item is deactivated, its history stays."""
        item = await self._get_owned_item(item_id, provider_id)
        await self.backend.table(ITEMS_TABLE).update({"is_active": False}).eq("id", item_id).execute()
        await self._invalidate_provider(item.provider_id)
        logger.info("Inventory item deactivated", extra={"item_id": item_id, "provider_id": item.provider_id})

    async def _invalidate_provider(self, provider_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate(f"inventory:{provider_id}:*")

    # Availability and locks

    async def get_available_count(
        self,
        item_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> int:
        count = await self.backend.rpc("get_available_inventory", {
            "p_inventory_item_id": item_id,
            "p_start_time": start_time,
            "p_end_time": end_time,
        })
        return int(count or 0)

    async def check_availability(
        self,
        item_id: str,
        quantity: int,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        exclude_lock_id: Optional[str] = None,
    ) -> InventoryAvailability:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", errors={"quantity": "must be >= 1"})

        data = await self.backend.rpc("check_inventory_availability", {
            "p_inventory_item_id": item_id,
            "p_quantity": quantity,
            "p_start_time": start_time,
            "p_end_time": end_time,
            "p_exclude_lock_id": exclude_lock_id,
        })
        return InventoryAvailability.model_validate(data)

    async def create_lock(self, locked_by: str, request: CreateLockRequest) -> CreateLockResult:
        """
        Reserve units of an item.

        Soft locks expire after ``soft_lock_minutes``; hard locks last until
        released. Rental locks carry a pickup/dropoff window.
        """
        if request.pickup_at and request.dropoff_at and request.dropoff_at <= request.pickup_at:
            raise ValidationError(
                "Dropoff must be after pickup",
                errors={"dropoff_at": "must be after pickup_at"},
            )

        data = await self.backend.rpc("create_inventory_lock", {
            "p_inventory_item_id": request.inventory_item_id,
            "p_quantity": request.quantity,
            "p_lock_type": request.lock_type.value,
            "p_locked_by": locked_by,
            "p_booking_id": request.booking_id,
            "p_production_order_id": request.production_order_id,
            "p_service_listing_id": request.service_listing_id,
            "p_pickup_at": request.pickup_at,
            "p_dropoff_at": request.dropoff_at,
            "p_soft_lock_minutes": request.soft_lock_minutes or DEFAULT_SOFT_LOCK_MINUTES,
        })
        result = CreateLockResult.model_validate(data)

        if result.success:
            logger.info(
                "Inventory lock created",
                extra={
                    "lock_id": result.lock_id,
                    "item_id": request.inventory_item_id,
                    "quantity": request.quantity,
                    "lock_type": request.lock_type.value,
                },
            )
        else:
            logger.warning(
                "Inventory lock refused",
                extra={"item_id": request.inventory_item_id, "quantity": request.quantity, "error": result.error},
            )
        return result

    async def upgrade_lock(
        self,
        lock_id: str,
        booking_id: Optional[str] = None,
        production_order_id: Optional[str] = None,
    ) -> LockActionResult:
        """Turn a soft lock into a hard lock bound to a booking or production order."""
        data = await self.backend.rpc("upgrade_inventory_lock", {
            "p_lock_id": lock_id,
            "p_booking_id": booking_id,
            "p_production_order_id": production_order_id,
        })
        result = LockActionResult.model_validate(data)
        logger.info("Inventory lock upgrade", extra={"lock_id": lock_id, "success": result.success})
        return result

    async def release_lock(self, lock_id: str, reason: str = DEFAULT_RELEASE_REASON) -> LockActionResult:
        data = await self.backend.rpc("release_inventory_lock", {
            "p_lock_id": lock_id,
            "p_reason": reason or DEFAULT_RELEASE_REASON,
        })
        result = LockActionResult.model_validate(data)
        logger.info("Inventory lock release", extra={"lock_id": lock_id, "reason": reason, "success": result.success})
        return result

    async def get_lock(self, lock_id: str) -> InventoryLock:
        row = await self.backend.table(LOCKS_TABLE).select().eq("id", lock_id).maybe_single().execute()
        if row is None:
            raise NotFoundError("inventory lock", lock_id)
        return InventoryLock.model_validate(row)

    async def get_active_locks_for_item(self, item_id: str) -> list[InventoryLock]:
        rows = await (
            self.backend.table(LOCKS_TABLE)
            .select()
            .eq("inventory_item_id", item_id)
            .eq("status", LockStatus.ACTIVE.value)
            .order("created_at", ascending=False)
            .execute()
        )
        return [InventoryLock.model_validate(row) for row in rows or []]

    async def _active_lock_by(self, column: str, value: str) -> Optional[InventoryLock]:
        row = await (
            self.backend.table(LOCKS_TABLE)
            .select()
            .eq(column, value)
            .eq("status", LockStatus.ACTIVE.value)
            .maybe_single()
            .execute()
        )
        return InventoryLock.model_validate(row) if row else None

    async def get_lock_for_booking(self, booking_id: str) -> Optional[InventoryLock]:
        return await self._active_lock_by("booking_id", booking_id)

    async def get_lock_for_production_order(self, order_id: str) -> Optional[InventoryLock]:
        return await self._active_lock_by("production_order_id", order_id)

    async def get_calendar(
        self,
        provider_id: str,
        start_date: date,
        end_date: date,
        item_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Locks and items over a date range, as assembled by the backend."""
        if end_date < start_date:
            raise ValidationError("End date must not be before start date", errors={"end_date": "before start_date"})

        data = await self.backend.rpc("get_inventory_calendar", {
            "p_provider_id": provider_id,
            "p_start_date": start_date,
            "p_end_date": end_date,
            "p_inventory_item_id": item_id,
        })
        return data or {
            "locks": [],
            "items": [],
            "date_range": {"start": start_date.isoformat(), "end": end_date.isoformat()},
        }

    # Alerts

    async def list_alerts(
        self,
        provider_id: str,
        include_read: bool = False,
        include_dismissed: bool = False,
    ) -> list[InventoryAlert]:
        query = self.backend.table(ALERTS_TABLE).select().eq("provider_id", provider_id)
        if not include_read:
            query = query.eq("is_read", False)
        if not include_dismissed:
            query = query.eq("is_dismissed", False)

        rows = await query.order("triggered_at", ascending=False).execute()
        return [InventoryAlert.model_validate(row) for row in rows or []]

    async def _update_alert(self, alert_id: str, provider_id: Optional[str], values: dict[str, Any]) -> None:
        query = self.backend.table(ALERTS_TABLE).update(values).eq("id", alert_id)
        if provider_id is not None:
            query = query.eq("provider_id", provider_id)
        if not await query.execute():
            raise NotFoundError("inventory alert", alert_id)

    async def mark_alert_read(self, alert_id: str, provider_id: Optional[str] = None) -> None:
        await self._update_alert(alert_id, provider_id, {"is_read": True, "read_at": utcnow()})

    async def dismiss_alert(self, alert_id: str, provider_id: Optional[str] = None) -> None:
        await self._update_alert(alert_id, provider_id, {"is_dismissed": True, "dismissed_at": utcnow()})

    # Reporting

    async def get_stats(self, provider_id: str) -> InventoryStats:
        """Totals across a provider's active items; availability is fetched concurrently."""
        items = await self.list_items(provider_id)
        if not items:
            return InventoryStats()

        available_counts = await asyncio.gather(*(self.get_available_count(item.id) for item in items))

        stats = InventoryStats(total_items=len(items))
        for item, available in zip(items, available_counts):
            stats.total_quantity += item.total_quantity
            stats.total_available += available
            level = format_inventory_status(available, item.total_quantity, item.low_stock_threshold).status
            if level == InventoryStatusLevel.OUT_OF_STOCK:
                stats.out_of_stock_items += 1
            elif level == InventoryStatusLevel.LOW_STOCK:
                stats.low_stock_items += 1

        locks = await (
            self.backend.table(LOCKS_TABLE)
            .select("id, pickup_at")
            .in_("inventory_item_id", [item.id for item in items])
            .eq("status", LockStatus.ACTIVE.value)
            .execute()
        ) or []
        stats.active_locks = len(locks)
        stats.active_rentals = sum(1 for lock in locks if lock.get("pickup_at") is not None)
        return stats

    async def get_upcoming_handovers(
        self,
        provider_id: str,
        days: int = 7,
        now: Optional[datetime] = None,
    ) -> UpcomingHandovers:
        """Active rental pickups and returns falling within the next ``days`` days."""
        now = now or utcnow()
        horizon = now + timedelta(days=days)

        items = await self.list_items(provider_id)
        if not items:
            return UpcomingHandovers()
        names = {item.id: item.name for item in items}

        rows = await (
            self.backend.table(LOCKS_TABLE)
            .select()
            .in_("inventory_item_id", list(names))
            .eq("status", LockStatus.ACTIVE.value)
            .not_("pickup_at", "is", None)
            .execute()
        ) or []

        schedule = UpcomingHandovers()
        for row in rows:
            lock = InventoryLock.model_validate(row)
            item_name = names.get(lock.inventory_item_id, "Unknown")
            if lock.pickup_at and now <= parse_datetime(lock.pickup_at) <= horizon:
                schedule.pickups.append(ScheduledHandover(lock=lock, item_name=item_name))
            if lock.dropoff_at and now <= parse_datetime(lock.dropoff_at) <= horizon:
                schedule.returns.append(ScheduledHandover(lock=lock, item_name=item_name))

        schedule.pickups.sort(key=lambda h: parse_datetime(h.lock.pickup_at))
        schedule.returns.sort(key=lambda h: parse_datetime(h.lock.dropoff_at))
        return schedule


def format_inventory_status(available: int, total: int, threshold: int) -> InventoryStatus:
    """Classify stock for display. ``total`` is accepted for callers that show ratios."""
    if available <= 0:
        return InventoryStatus(status=InventoryStatusLevel.OUT_OF_STOCK, label="Out of Stock", color="#EF4444")
    if threshold > 0 and available <= threshold:
        return InventoryStatus(status=InventoryStatusLevel.LOW_STOCK, label="Low Stock", color="#F59E0B")
    return InventoryStatus(status=InventoryStatusLevel.AVAILABLE, label="Available", color="#10B981")


def calculate_rental_duration(pickup_at: datetime, dropoff_at: datetime) -> RentalDuration:
    """Rental length rounded up to whole hours and whole days."""
    hours = math.ceil((dropoff_at - pickup_at).total_seconds() / 3600)
    days = math.ceil(hours / 24)

    if hours < 24:
        text = f"{hours} hour{'s' if hours != 1 else ''}"
    elif days == 1:
        text = "1 day"
    else:
        text = f"{days} days"

    return RentalDuration(hours=hours, days=days, display_text=text)


def calculate_effective_dropoff(dropoff_at: datetime, turnaround_buffer_hours: float) -> datetime:
    """When a returned item is ready again, after its turnaround buffer."""
    return dropoff_at + timedelta(hours=turnaround_buffer_hours)
