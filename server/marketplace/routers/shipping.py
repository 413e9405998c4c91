"""Shipping router: saved addresses, shipments and fulfilment options."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..core.dependencies import AuthUser, get_current_user, get_shipping_service
from ..core.exceptions import ProblemDetailsException
from ..schemas.shipping import (
    ConfirmDeliveryRequest,
    CreateShipmentRequest,
    CreateShippingAddressRequest,
    FulfillmentOption,
    PickupDropoffCost,
    PickupDropoffCostRequest,
    Shipment,
    ShippingAddress,
    UpdateShippingAddressRequest,
    UpdateTrackingRequest,
)
from ..services.shipping_service import ShippingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/shipping", tags=["shipping"])

USER_DEPENDENCY = Depends(get_current_user)
SERVICE_DEPENDENCY = Depends(get_shipping_service)


def _json(model, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(mode="json"))


# Addresses

@router.get("/addresses", response_model=list[ShippingAddress])
async def list_addresses(
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    addresses = await service.list_addresses(user.user_id)
    return JSONResponse(status_code=200, content=[address.model_dump(mode="json") for address in addresses])


@router.get("/addresses/default", response_model=Optional[ShippingAddress])
async def get_default_address(
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    address = await service.get_default_address(user.user_id)
    return JSONResponse(status_code=200, content=address.model_dump(mode="json") if address else None)


@router.post("/addresses", response_model=ShippingAddress, status_code=201)
async def create_address(
    request: CreateShippingAddressRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Save an address; making it the default clears the previous default."""
    return _json(await service.create_address(user.user_id, request), status_code=201)


@router.patch("/addresses/{address_id}", response_model=ShippingAddress)
async def update_address(
    address_id: str,
    request: UpdateShippingAddressRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.update_address(user.user_id, address_id, request))


@router.delete("/addresses/{address_id}", status_code=204)
async def delete_address(
    address_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> None:
    await service.delete_address(user.user_id, address_id)


# Shipments

@router.post("/shipments", response_model=Shipment, status_code=201)
async def create_shipment(
    request: CreateShipmentRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    try:
        shipment = await service.create_shipment(request)
        return _json(shipment, status_code=201)

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error creating shipment",
            extra={"booking_id": request.booking_id, "carrier": request.carrier, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.get("/shipments/by-booking/{booking_id}", response_model=Optional[Shipment])
async def get_shipment_for_booking(
    booking_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    shipment = await service.get_shipment_for_booking(booking_id)
    return JSONResponse(status_code=200, content=shipment.model_dump(mode="json") if shipment else None)


@router.get("/shipments/{shipment_id}", response_model=Shipment)
async def get_shipment(
    shipment_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.get_shipment(shipment_id))


@router.post("/shipments/{shipment_id}/tracking", response_model=Shipment)
async def update_tracking(
    shipment_id: str,
    request: UpdateTrackingRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.update_tracking(shipment_id, request))


@router.get("/shipments/{shipment_id}/track")
async def track_shipment(
    shipment_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    tracking = await service.track_shipment(shipment_id)
    return JSONResponse(status_code=200, content=jsonable_encoder(tracking))


@router.post("/shipments/{shipment_id}/confirm-delivery", response_model=Shipment)
async def confirm_delivery(
    shipment_id: str,
    request: ConfirmDeliveryRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Mark the shipment delivered and stamp the booking's delivery confirmation."""
    return _json(await service.confirm_delivery(shipment_id, request.proof_of_delivery_url))


# Fulfilment options

@router.get("/listings/{listing_id}/fulfillment-options", response_model=list[FulfillmentOption])
async def list_fulfillment_options(
    listing_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    options = await service.list_fulfillment_options(listing_id)
    return JSONResponse(status_code=200, content=[option.model_dump(mode="json") for option in options])


@router.post("/fulfillment-options", response_model=FulfillmentOption, status_code=201)
async def create_fulfillment_option(
    request: FulfillmentOption,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.create_fulfillment_option(request), status_code=201)


@router.post("/pickup-dropoff-cost", response_model=PickupDropoffCost)
async def quote_pickup_dropoff(
    request: PickupDropoffCostRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: ShippingService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    cost = await service.quote_pickup_dropoff(
        request.fulfillment_option_id,
        request.distance_miles,
        request.weight_lbs,
        request.quantity,
    )
    return _json(PickupDropoffCost(fulfillment_option_id=request.fulfillment_option_id, cost=cost))
