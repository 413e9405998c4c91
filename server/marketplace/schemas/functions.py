"""
Request and response contracts of the serverless function endpoints.

These bodies use camelCase JSON, the convention of the mobile client that
calls them; serialise with ``model_dump(by_alias=True, mode="json")``.
"""

from decimal import Decimal
from typing import Any, List, Optional

from pydantic import Field, model_validator

from .common import CamelModel, Money
from .shipping import Carrier, Dimensions, ShippingRateQuote


class ProcessRefundRequest(CamelModel):
    refund_id: str = Field(..., min_length=1)


class ProcessRefundResponse(CamelModel):
    success: bool = True
    refund_id: str
    stripe_refund_id: str
    amount: Money
    status: str
    escrow_status: Optional[str] = None


class ReleaseEscrowRequest(CamelModel):
    """Release a hold, addressed either by its id or by its booking."""

    booking_id: Optional[str] = None
    escrow_hold_id: Optional[str] = None

    @model_validator(mode="after")
    def require_target(self):
        if not self.booking_id and not self.escrow_hold_id:
            raise ValueError("Either bookingId or escrowHoldId is required")
        return self


class ReleaseEscrowResponse(CamelModel):
    success: bool = True
    escrow_hold_id: str
    transfer_id: Optional[str] = None
    provider_payout: Money
    platform_fee: Money
    already_released: bool = False


class SendSmsRequest(CamelModel):
    to: str = Field(..., min_length=1, max_length=32)
    message: str = Field(..., min_length=1, max_length=1600)
    template_variables: Optional[dict[str, Any]] = None


class SendSmsResponse(CamelModel):
    success: bool = True
    message_sid: str
    segments: int
    estimated_cost: Money
    status: str


class SendEmailRequest(CamelModel):
    to: str = Field(..., min_length=3, max_length=320)
    subject: str = Field(..., min_length=1, max_length=998)
    html: Optional[str] = None
    text: Optional[str] = None
    reply_to: Optional[str] = None
    template_variables: Optional[dict[str, Any]] = None


class SendEmailResponse(CamelModel):
    success: bool = True
    message_id: str


class SendReceiptRequest(CamelModel):
    """Create (when ``receiptId`` is absent) and email a transaction receipt."""

    receipt_id: Optional[str] = None
    user_id: str
    transaction_type: str = Field(..., min_length=1, max_length=50)
    booking_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Decimal = Field(..., ge=0)
    receipt_data: dict[str, Any] = Field(default_factory=dict)
    line_items: Optional[List[dict[str, Any]]] = None
    send_email: bool = True


class SendReceiptResponse(CamelModel):
    success: bool = True
    receipt_id: str
    receipt_number: Optional[str] = None
    email_sent: bool


class CalculateShippingRatesRequest(CamelModel):
    origin_zip: str = Field(..., min_length=3, max_length=10)
    destination_zip: str = Field(..., min_length=3, max_length=10)
    weight_oz: Decimal = Field(..., gt=0)
    dimensions: Dimensions
    fulfillment_window_days: int = Field(0, ge=0, le=90)
    carrier_preference: Optional[List[Carrier]] = None


class CalculateShippingRatesResponse(CamelModel):
    rates: List[ShippingRateQuote]
