"""Serverless function endpoints called by the mobile client."""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ..core.dependencies import (
    AuthUser,
    get_current_user,
    get_escrow_service,
    get_idempotency_key,
    get_idempotency_service,
    get_notifier,
    get_receipt_service,
    get_refund_processor,
    get_shipping_service,
    require_admin,
)
from ..core.exceptions import PROBLEM_MEDIA_TYPE, AuthorizationError, ProblemDetailsException
from ..schemas.common import Problem
from ..schemas.functions import (
    CalculateShippingRatesRequest,
    CalculateShippingRatesResponse,
    ProcessRefundRequest,
    ProcessRefundResponse,
    ReleaseEscrowRequest,
    ReleaseEscrowResponse,
    SendEmailRequest,
    SendEmailResponse,
    SendReceiptRequest,
    SendReceiptResponse,
    SendSmsRequest,
    SendSmsResponse,
)
from ..services.escrow_service import EscrowService
from ..services.idempotency_service import IdempotencyService
from ..services.notification_service import NotificationService
from ..services.receipt_service import ReceiptService
from ..services.refund_processor import RefundProcessor
from ..services.shipping_service import ShippingService

logger = logging.getLogger(__name__)

PROBLEM_RESPONSES = {
    status_code: {"model": Problem, "content": {"application/problem+json": {}}}
    for status_code in (400, 401, 403, 404, 409, 422, 502)
}

router = APIRouter(prefix="/functions/v1", tags=["functions"], responses=PROBLEM_RESPONSES)

# Define dependencies to avoid B008 linting errors
USER_DEPENDENCY = Depends(get_current_user)
ADMIN_DEPENDENCY = Depends(require_admin)
IDEMPOTENCY_KEY_DEPENDENCY = Depends(get_idempotency_key)
IDEMPOTENCY_SERVICE_DEPENDENCY = Depends(get_idempotency_service)


def _camel(model) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")


async def _handle_idempotent_operation(
    method: str,
    idempotency_key: Optional[str],
    request_body: dict[str, Any],
    operation_func: Callable[[], Awaitable[dict[str, Any]]],
    idempotency_service: IdempotencyService,
) -> JSONResponse:
    """
    Run ``operation_func`` at most once per Idempotency-Key.

    Responses, including client errors, are stored and replayed. Upstream
    (5xx) failures are not stored so that a retry can reach the processor again.
    """
    if not idempotency_key:
        return JSONResponse(status_code=200, content=await operation_func())

    cached_response = await idempotency_service.check_idempotency(
        idempotency_key=idempotency_key,
        method=method,
        request_body=request_body,
    )
    if cached_response:
        status_code, response_body, response_headers = cached_response
        return JSONResponse(
            status_code=status_code,
            content=response_body,
            headers={**(response_headers or {}), "Idempotent-Replayed": "true"},
            media_type=PROBLEM_MEDIA_TYPE if status_code >= 400 else None,
        )

    try:
        result = await operation_func()

        if isinstance(result, JSONResponse):
            response_dict = json.loads(result.body)
            status_code = result.status_code
        else:
            response_dict = result
            status_code = 200

        await idempotency_service.store_response(
            idempotency_key=idempotency_key,
            method=method,
            request_body=request_body,
            status_code=status_code,
            response_body=response_dict,
        )
        return JSONResponse(status_code=status_code, content=response_dict)

    except ProblemDetailsException as e:
        if e.status_code < 500:
            await idempotency_service.store_response(
                idempotency_key=idempotency_key,
                method=method,
                request_body=request_body,
                status_code=e.status_code,
                response_body=e.problem_details,
            )
        raise


@router.post("/process-refund", response_model=ProcessRefundResponse)
async def process_refund(
    request: ProcessRefundRequest,
    user: AuthUser = ADMIN_DEPENDENCY,
    processor: RefundProcessor = Depends(get_refund_processor),
    idempotency_key: Optional[str] = IDEMPOTENCY_KEY_DEPENDENCY,
    idempotency_service: IdempotencyService = IDEMPOTENCY_SERVICE_DEPENDENCY,
) -> JSONResponse:
    """
    Issue a Pending refund through the payment processor.

    Administrators only. Safe to retry with the same Idempotency-Key.
    """

    async def operation():
        result = await processor.process(request.refund_id, admin_id=user.user_id)
        return _camel(ProcessRefundResponse(
            refund_id=result.refund_id,
            stripe_refund_id=result.stripe_refund_id,
            amount=result.amount,
            status=result.status,
            escrow_status=result.escrow_status,
        ))

    try:
        return await _handle_idempotent_operation(
            method="process-refund",
            idempotency_key=idempotency_key,
            request_body={**request.model_dump(mode="json"), "caller": user.user_id},
            operation_func=operation,
            idempotency_service=idempotency_service,
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error processing refund",
            extra={"refund_id": request.refund_id, "idempotency_key": idempotency_key, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/release-escrow", response_model=ReleaseEscrowResponse)
async def release_escrow(
    request: ReleaseEscrowRequest,
    user: AuthUser = USER_DEPENDENCY,
    escrow: EscrowService = Depends(get_escrow_service),
    idempotency_key: Optional[str] = IDEMPOTENCY_KEY_DEPENDENCY,
    idempotency_service: IdempotencyService = IDEMPOTENCY_SERVICE_DEPENDENCY,
) -> JSONResponse:
    """
    Pay a held booking payment out to the provider.

    Callable by the booking's customer or an administrator. Releasing an
    already released hold reports ``alreadyReleased`` instead of failing.
    """

    async def operation():
        result = await escrow.release(
            hold_id=request.escrow_hold_id,
            booking_id=request.booking_id,
            caller_id=user.user_id,
            caller_is_admin=user.is_admin,
        )
        return _camel(ReleaseEscrowResponse(
            escrow_hold_id=result.escrow_hold_id,
            transfer_id=result.transfer_id,
            provider_payout=result.provider_payout,
            platform_fee=result.platform_fee,
            already_released=result.already_released,
        ))

    try:
        return await _handle_idempotent_operation(
            method="release-escrow",
            idempotency_key=idempotency_key,
            request_body={**request.model_dump(mode="json"), "caller": user.user_id},
            operation_func=operation,
            idempotency_service=idempotency_service,
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error releasing escrow",
            extra={
                "booking_id": request.booking_id,
                "escrow_hold_id": request.escrow_hold_id,
                "error": str(e),
            },
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/send-sms", response_model=SendSmsResponse)
async def send_sms(
    request: SendSmsRequest,
    user: AuthUser = USER_DEPENDENCY,
    notifier: NotificationService = Depends(get_notifier),
) -> JSONResponse:
    try:
        result = await notifier.send_sms(request.to, request.message, request.template_variables)
        logger.info("SMS requested", extra={"user_id": user.user_id, "segments": result.segments})
        return JSONResponse(status_code=200, content=_camel(SendSmsResponse(
            message_sid=result.message_sid,
            segments=result.segments,
            estimated_cost=result.estimated_cost,
            status=result.status,
        )))

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error("Unexpected error sending SMS", extra={"error": str(e)}, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/send-email", response_model=SendEmailResponse)
async def send_email(
    request: SendEmailRequest,
    user: AuthUser = USER_DEPENDENCY,
    notifier: NotificationService = Depends(get_notifier),
) -> JSONResponse:
    try:
        message_id = await notifier.send_email(
            request.to,
            request.subject,
            html=request.html,
            text=request.text,
            reply_to=request.reply_to,
            template_variables=request.template_variables,
        )
        logger.info("Email requested", extra={"user_id": user.user_id, "message_id": message_id})
        return JSONResponse(status_code=200, content=_camel(SendEmailResponse(message_id=message_id)))

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error("Unexpected error sending email", extra={"error": str(e)}, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/send-receipt-email", response_model=SendReceiptResponse)
async def send_receipt_email(
    request: SendReceiptRequest,
    user: AuthUser = USER_DEPENDENCY,
    receipts: ReceiptService = Depends(get_receipt_service),
) -> JSONResponse:
    """Create a receipt when needed and email it to the user it belongs to."""
    if not user.is_admin and request.user_id != user.user_id:
        raise AuthorizationError("Receipts can only be sent for your own transactions")

    try:
        result = await receipts.send_receipt(request)
        return JSONResponse(status_code=200, content=_camel(result))

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error sending receipt",
            extra={"user_id": request.user_id, "transaction_type": request.transaction_type, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/calculate-shipping-rates", response_model=CalculateShippingRatesResponse)
async def calculate_shipping_rates(
    request: CalculateShippingRatesRequest,
    user: AuthUser = USER_DEPENDENCY,
    shipping: ShippingService = Depends(get_shipping_service),
) -> JSONResponse:
    """Carrier rate quotes, sorted by price, with cheapest/fastest/best-value flags."""
    try:
        rates = await shipping.get_rates(request)
        return JSONResponse(status_code=200, content=_camel(CalculateShippingRatesResponse(rates=rates)))

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error calculating shipping rates",
            extra={"origin_zip": request.origin_zip, "destination_zip": request.destination_zip, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e
