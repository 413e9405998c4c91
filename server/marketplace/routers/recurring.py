"""Recurring booking router."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ..core.dependencies import AuthUser, get_current_user, get_recurring_booking_service, require_admin
from ..core.exceptions import NotFoundError, ProblemDetailsException
from ..schemas.recurring import (
    CreateRecurringBookingRequest,
    MaterializeResult,
    PreviewRecurringBookingRequest,
    RecurringBooking,
    RecurringBookingPreview,
)
from ..services.recurring_booking_service import RecurringBookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/recurring-bookings", tags=["recurring-bookings"])

USER_DEPENDENCY = Depends(get_current_user)
SERVICE_DEPENDENCY = Depends(get_recurring_booking_service)


@router.post("/preview", response_model=RecurringBookingPreview)
async def preview_recurring_booking(
    request: PreviewRecurringBookingRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: RecurringBookingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """
    Occurrences a series would produce, each checked against the provider's
    availability, with the total estimated cost.
    """
    preview = await service.preview(request)
    return JSONResponse(status_code=200, content=preview.model_dump(mode="json"))


@router.post("", response_model=RecurringBooking, status_code=201)
async def create_recurring_booking(
    request: CreateRecurringBookingRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: RecurringBookingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Create a series for the caller and book its first occurrence."""
    try:
        recurring = await service.create(user.user_id, request)
        return JSONResponse(status_code=201, content=recurring.model_dump(mode="json"))

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error creating recurring booking",
            extra={"customer_id": user.user_id, "provider_id": request.provider_id, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.get("", response_model=list[RecurringBooking])
async def list_recurring_bookings(
    user: AuthUser = USER_DEPENDENCY,
    service: RecurringBookingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    series = await service.list_for_customer(user.user_id)
    return JSONResponse(status_code=200, content=[item.model_dump(mode="json") for item in series])


@router.get("/{recurring_id}", response_model=RecurringBooking)
async def get_recurring_booking(
    recurring_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: RecurringBookingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    recurring = await service.get(recurring_id)
    if not user.is_admin and recurring.customer_id != user.user_id:
        raise NotFoundError("recurring booking", recurring_id)
    return JSONResponse(status_code=200, content=recurring.model_dump(mode="json"))


@router.post("/{recurring_id}/cancel", status_code=204)
async def cancel_recurring_booking(
    recurring_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: RecurringBookingService = SERVICE_DEPENDENCY,
) -> None:
    """Stop a series. Bookings it already created are kept."""
    await service.cancel(recurring_id, customer_id=None if user.is_admin else user.user_id)


@router.post("/{recurring_id}/materialize", response_model=MaterializeResult)
async def materialize_next_booking(
    recurring_id: str,
    admin: AuthUser = Depends(require_admin),
    service: RecurringBookingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Book the series' next occurrence now instead of waiting for the worker."""
    result = await service.materialize_next(recurring_id)
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))
