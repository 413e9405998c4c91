"""Inventory router: provider items, availability, locks, alerts and reporting."""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from ..core.dependencies import AuthUser, get_current_user, get_inventory_service
from ..core.exceptions import NotFoundError, ProblemDetailsException
from ..schemas.inventory import (
    CreateInventoryItemRequest,
    CreateLockRequest,
    CreateLockResult,
    InventoryAlert,
    InventoryAvailability,
    InventoryItem,
    InventoryLock,
    InventoryStats,
    LockActionResult,
    ReleaseLockRequest,
    UpcomingHandovers,
    UpdateInventoryItemRequest,
    UpgradeLockRequest,
)
from ..services.inventory_service import InventoryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/inventory", tags=["inventory"])

USER_DEPENDENCY = Depends(get_current_user)
SERVICE_DEPENDENCY = Depends(get_inventory_service)


def _json(model, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(mode="json"))


def _json_list(models) -> JSONResponse:
    return JSONResponse(status_code=200, content=[model.model_dump(mode="json") for model in models])


def _owner(user: AuthUser) -> Optional[str]:
    """Providers act on their own items; administrators on any."""
    return None if user.is_admin else user.user_id


# Items

@router.get("/items", response_model=list[InventoryItem])
async def list_items(
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json_list(await service.list_items(user.user_id))


@router.post("/items", response_model=InventoryItem, status_code=201)
async def create_item(
    request: CreateInventoryItemRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    try:
        item = await service.create_item(user.user_id, request)
        return _json(item, status_code=201)

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error creating inventory item",
            extra={"provider_id": user.user_id, "item_name": request.name, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.get("/items/{item_id}", response_model=InventoryItem)
async def get_item(
    item_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    item = await service.get_item(item_id)
    if not user.is_admin and item.provider_id != user.user_id:
        raise NotFoundError("inventory item", item_id)
    return _json(item)


@router.patch("/items/{item_id}", response_model=InventoryItem)
async def update_item(
    item_id: str,
    request: UpdateInventoryItemRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.update_item(item_id, request, provider_id=_owner(user)))


@router.delete("/items/{item_id}", status_code=204)
async def delete_item(
    item_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> None:
    """Deactivate an item; lock history is kept."""
    await service.delete_item(item_id, provider_id=_owner(user))


# Availability

@router.get("/items/{item_id}/available-count")
async def get_available_count(
    item_id: str,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    count = await service.get_available_count(item_id, start_time, end_time)
    return JSONResponse(status_code=200, content={"inventory_item_id": item_id, "available": count})


@router.get("/items/{item_id}/availability", response_model=InventoryAvailability)
async def check_availability(
    item_id: str,
    quantity: int = Query(1, ge=1),
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    exclude_lock_id: Optional[str] = None,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    availability = await service.check_availability(item_id, quantity, start_time, end_time, exclude_lock_id)
    return _json(availability)


@router.get("/items/{item_id}/locks", response_model=list[InventoryLock])
async def list_active_locks(
    item_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json_list(await service.get_active_locks_for_item(item_id))


@router.get("/calendar")
async def get_calendar(
    start_date: date,
    end_date: date,
    item_id: Optional[str] = None,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    calendar = await service.get_calendar(user.user_id, start_date, end_date, item_id)
    return JSONResponse(status_code=200, content=calendar)


# Locks

@router.post("/locks", response_model=CreateLockResult)
async def create_lock(
    request: CreateLockRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """
    Reserve units of an item.

    A refused lock is not an HTTP error: the result carries ``success: false``
    with the reason and the availability that was checked.
    """
    try:
        result = await service.create_lock(user.user_id, request)
        return _json(result)

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error creating inventory lock",
            extra={"item_id": request.inventory_item_id, "quantity": request.quantity, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.get("/locks/by-booking/{booking_id}", response_model=Optional[InventoryLock])
async def get_lock_for_booking(
    booking_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    lock = await service.get_lock_for_booking(booking_id)
    return JSONResponse(status_code=200, content=lock.model_dump(mode="json") if lock else None)


@router.get("/locks/by-production-order/{order_id}", response_model=Optional[InventoryLock])
async def get_lock_for_production_order(
    order_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    lock = await service.get_lock_for_production_order(order_id)
    return JSONResponse(status_code=200, content=lock.model_dump(mode="json") if lock else None)


@router.get("/locks/{lock_id}", response_model=InventoryLock)
async def get_lock(
    lock_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.get_lock(lock_id))


@router.post("/locks/{lock_id}/upgrade", response_model=LockActionResult)
async def upgrade_lock(
    lock_id: str,
    request: UpgradeLockRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    result = await service.upgrade_lock(lock_id, request.booking_id, request.production_order_id)
    return _json(result)


@router.post("/locks/{lock_id}/release", response_model=LockActionResult)
async def release_lock(
    lock_id: str,
    request: ReleaseLockRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.release_lock(lock_id, request.reason))


# Alerts

@router.get("/alerts", response_model=list[InventoryAlert])
async def list_alerts(
    include_read: bool = False,
    include_dismissed: bool = False,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json_list(await service.list_alerts(user.user_id, include_read, include_dismissed))


@router.post("/alerts/{alert_id}/read", status_code=204)
async def mark_alert_read(
    alert_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> None:
    await service.mark_alert_read(alert_id, provider_id=_owner(user))


@router.post("/alerts/{alert_id}/dismiss", status_code=204)
async def dismiss_alert(
    alert_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> None:
    await service.dismiss_alert(alert_id, provider_id=_owner(user))


# Reporting

@router.get("/stats", response_model=InventoryStats)
async def get_stats(
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.get_stats(user.user_id))


@router.get("/upcoming", response_model=UpcomingHandovers)
async def get_upcoming_handovers(
    days: int = Query(7, ge=1, le=90),
    user: AuthUser = USER_DEPENDENCY,
    service: InventoryService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Rental pickups and returns due within ``days`` days."""
    return _json(await service.get_upcoming_handovers(user.user_id, days))
