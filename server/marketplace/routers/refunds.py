"""Refund routers: customer requests and administrator review."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ..core.dependencies import (
    AuthUser,
    get_admin_refund_service,
    get_current_user,
    get_refund_service,
    require_admin,
)
from ..core.exceptions import NotFoundError, ProblemDetailsException
from ..schemas.refunds import (
    ApproveRefundRequest,
    CustomerRefundStats,
    ManualProcessRequest,
    ManualRefundRequest,
    Refund,
    RefundEligibility,
    RefundMetrics,
    RefundPolicy,
    RefundStatus,
    RejectRefundRequest,
    SubmitRefundRequest,
)
from ..services.refund_service import REFUND_POLICY_SUMMARY, AdminRefundService, RefundService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/refunds", tags=["refunds"])
admin_router = APIRouter(prefix="/v1/admin/refunds", tags=["admin"])

USER_DEPENDENCY = Depends(get_current_user)
ADMIN_DEPENDENCY = Depends(require_admin)
SERVICE_DEPENDENCY = Depends(get_refund_service)
ADMIN_SERVICE_DEPENDENCY = Depends(get_admin_refund_service)


def _json(model, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(mode="json"))


def _json_list(models) -> JSONResponse:
    return JSONResponse(status_code=200, content=[model.model_dump(mode="json") for model in models])


# Customer

@router.get("/policy", response_model=RefundPolicy)
async def get_refund_policy() -> JSONResponse:
    return _json(RefundPolicy(rules=REFUND_POLICY_SUMMARY))


@router.get("/eligibility/{booking_id}", response_model=RefundEligibility)
async def check_eligibility(
    booking_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: RefundService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """How much of a booking would be refunded if cancelled today."""
    return _json(await service.check_eligibility(booking_id))


@router.post("", response_model=Refund, status_code=201)
async def submit_refund_request(
    request: SubmitRefundRequest,
    user: AuthUser = USER_DEPENDENCY,
    service: RefundService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """
    Request a refund and cancel the booking.

    The request stays Pending until an administrator processes it.
    """
    try:
        refund = await service.submit_refund_request(user.user_id, request)

        logger.info(
            "Refund request submitted",
            extra={"refund_id": refund.id, "booking_id": request.booking_id, "user_id": user.user_id},
        )
        return _json(refund, status_code=201)

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error submitting refund request",
            extra={"booking_id": request.booking_id, "user_id": user.user_id, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.get("", response_model=list[Refund])
async def list_my_refunds(
    user: AuthUser = USER_DEPENDENCY,
    service: RefundService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json_list(await service.get_customer_refunds(user.user_id))


@router.get("/stats", response_model=CustomerRefundStats)
async def get_my_refund_stats(
    user: AuthUser = USER_DEPENDENCY,
    service: RefundService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.get_customer_stats(user.user_id))


@router.get("/booking/{booking_id}", response_model=Optional[Refund])
async def get_booking_refund(
    booking_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: RefundService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    refund = await service.get_booking_refund(booking_id, user.user_id)
    return JSONResponse(status_code=200, content=refund.model_dump(mode="json") if refund else None)


@router.get("/{refund_id}", response_model=Refund)
async def get_refund(
    refund_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: RefundService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    refund = await service.get_refund(refund_id)
    if not user.is_admin and refund.requested_by != user.user_id:
        raise NotFoundError("refund", refund_id)
    return _json(refund)


@router.post("/{refund_id}/cancel", response_model=Refund)
async def cancel_refund_request(
    refund_id: str,
    user: AuthUser = USER_DEPENDENCY,
    service: RefundService = SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Withdraw a Pending request."""
    return _json(await service.cancel_refund_request(refund_id, user.user_id))


# Administrator

@admin_router.get("", response_model=list[Refund])
async def list_refunds(
    status: Optional[RefundStatus] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
    admin: AuthUser = ADMIN_DEPENDENCY,
    service: AdminRefundService = ADMIN_SERVICE_DEPENDENCY,
) -> JSONResponse:
    refunds = await service.list_refunds(status=status, from_date=from_date, to_date=to_date, search=search)
    return _json_list(refunds)


@admin_router.post("", response_model=Refund, status_code=201)
async def create_manual_refund(
    request: ManualRefundRequest,
    admin: AuthUser = ADMIN_DEPENDENCY,
    service: AdminRefundService = ADMIN_SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.create_manual_refund(admin.user_id, request), status_code=201)


@admin_router.get("/metrics", response_model=RefundMetrics)
async def get_refund_metrics(
    admin: AuthUser = ADMIN_DEPENDENCY,
    service: AdminRefundService = ADMIN_SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.get_metrics())


@admin_router.get("/booking/{booking_id}", response_model=list[Refund])
async def booking_refund_history(
    booking_id: str,
    admin: AuthUser = ADMIN_DEPENDENCY,
    service: AdminRefundService = ADMIN_SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json_list(await service.booking_refund_history(booking_id))


@admin_router.post("/{refund_id}/approve", response_model=Refund)
async def approve_refund(
    refund_id: str,
    request: ApproveRefundRequest,
    admin: AuthUser = ADMIN_DEPENDENCY,
    service: AdminRefundService = ADMIN_SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Mark a Pending refund Completed without moving money through the processor."""
    return _json(await service.approve_refund(refund_id, admin.user_id, request.notes))


@admin_router.post("/{refund_id}/reject", response_model=Refund)
async def reject_refund(
    refund_id: str,
    request: RejectRefundRequest,
    admin: AuthUser = ADMIN_DEPENDENCY,
    service: AdminRefundService = ADMIN_SERVICE_DEPENDENCY,
) -> JSONResponse:
    return _json(await service.reject_refund(refund_id, admin.user_id, request.reason))


@admin_router.post("/{refund_id}/mark-processed", response_model=Refund)
async def mark_processed_manually(
    refund_id: str,
    request: ManualProcessRequest,
    admin: AuthUser = ADMIN_DEPENDENCY,
    service: AdminRefundService = ADMIN_SERVICE_DEPENDENCY,
) -> JSONResponse:
    """Record a refund issued outside the service, e.g. from the processor dashboard."""
    return _json(await service.mark_processed_manually(refund_id, request.stripe_refund_id))
