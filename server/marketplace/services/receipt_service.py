"""Transaction receipts: creation, rendering and delivery by email."""

import json
import logging
from decimal import Decimal, InvalidOperation
from html import escape
from typing import Any, Optional

from ..backend import Backend
from ..backend.client import json_default
from ..backend.rows import parse_datetime, utcnow
from ..core.exceptions import NotFoundError, NotificationDeliveryError, ValidationError
from ..schemas.functions import SendReceiptRequest, SendReceiptResponse
from .notification_service import NotificationService, render_template

logger = logging.getLogger(__name__)

BRAND_NAME = "Marketplace"
SUPPORT_ADDRESS = "support@example.com"
RULE_WIDTH = 50

TEMPLATE_BY_TRANSACTION_TYPE = {
    "Booking": "booking_confirmation",
    "Deposit": "deposit_receipt",
    "Refund": "refund_receipt",
}
DEFAULT_RECEIPT_TEMPLATE = "payment_receipt"


def template_for(transaction_type: str) -> str:
    return TEMPLATE_BY_TRANSACTION_TYPE.get(transaction_type, DEFAULT_RECEIPT_TEMPLATE)


def _money(value: Any) -> str:
    try:
        return f"{Decimal(str(value)):.2f}"
    except (InvalidOperation, ValueError):
        return "0.00"


def _positive(value: Any) -> bool:
    try:
        return Decimal(str(value)) > 0
    except (InvalidOperation, ValueError):
        return False


def _h(value: Any) -> str:
    return escape(str(value if value is not None else ""))


def _receipt_date(receipt: dict[str, Any]) -> str:
    created = parse_datetime(receipt.get("created_at")) or utcnow()
    return f"{created.month}/{created.day}/{created.year}"


def render_receipt_html(receipt: dict[str, Any], data: dict[str, Any], user: dict[str, Any]) -> str:
    """HTML receipt body. Every interpolated value is escaped."""
    cell = "padding: 12px; border-bottom: 1px solid #e5e7eb;"

    line_items_html = "".join(
        f"""
        <tr>
          <td style="{cell}">{_h(item.get("description"))}</td>
          <td style="{cell} text-align: center;">{_h(item.get("quantity"))}</td>
          <td style="{cell} text-align: right;">${_money(item.get("unit_price"))}</td>
          <td style="{cell} text-align: right; font-weight: 600;">${_money(item.get("amount"))}</td>
        </tr>"""
        for item in receipt.get("line_items") or []
    )

    service_section = ""
    if data.get("service_name"):
        service_section = f"""
      <h2 style="font-size: 18px;">Service Details</h2>
      <p><strong>Service:</strong> {_h(data["service_name"])}</p>"""
        if data.get("booking_date"):
            service_section += f"""
      <p><strong>Date:</strong> {_h(data["booking_date"])}</p>"""
        if data.get("provider_name"):
            service_section += f"""
      <p><strong>Provider:</strong> {_h(data["provider_name"])}</p>"""

    line_items_section = ""
    if line_items_html:
        line_items_section = f"""
      <h2 style="font-size: 18px;">Itemized Charges</h2>
      <table style="width: 100%; border-collapse: collapse;">
        <thead>
          <tr><th>Description</th><th>Qty</th><th>Price</th><th>Amount</th></tr>
        </thead>
        <tbody>{line_items_html}
        </tbody>
      </table>"""

    deposit_section = ""
    if data.get("deposit_amount"):
        deposit_section = f"""
      <div style="background-color: #fef3c7; border-left: 4px solid #f59e0b; padding: 16px;">
        <p><strong>Payment Information</strong></p>
        <p>Deposit Paid: ${_money(data["deposit_amount"])}</p>"""
        if _positive(data.get("balance_amount")):
            deposit_section += f"""
        <p>Balance Due: ${_money(data["balance_amount"])}</p>"""
        if data.get("balance_due_date"):
            deposit_section += f"""
        <p>Due Date: {_h(data["balance_due_date"])}</p>"""
        deposit_section += """
      </div>"""

    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Receipt {_h(receipt.get("receipt_number"))}</title>
</head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; color: #1f2937;">
  <div style="max-width: 600px; margin: 40px auto; background-color: #ffffff;">
    <div style="background-color: #059669; color: white; padding: 32px; text-align: center;">
      <h1 style="margin: 0;">{BRAND_NAME}</h1>
      <p style="margin: 8px 0 0 0;">Transaction Receipt</p>
    </div>
    <div style="padding: 32px;">
      <p><strong>Receipt Number:</strong> {_h(receipt.get("receipt_number"))}</p>
      <p><strong>Date:</strong> {_receipt_date(receipt)}</p>
      <p><strong>Transaction Type:</strong> {_h(receipt.get("transaction_type"))}</p>

      <h2 style="font-size: 18px;">Customer Information</h2>
      <p><strong>Name:</strong> {_h(user.get("full_name"))}</p>
      <p><strong>Email:</strong> {_h(user.get("email"))}</p>
{service_section}
{line_items_section}
      <div style="background-color: #059669; color: white; padding: 24px; text-align: center;">
        <p style="margin: 0;">Total Amount</p>
        <p style="margin: 8px 0 0 0; font-size: 36px; font-weight: bold;">${_money(receipt.get("amount"))}</p>
        <p style="margin: 4px 0 0 0;">{_h(receipt.get("currency") or "USD")}</p>
      </div>
{deposit_section}
      <div style="border-top: 2px solid #e5e7eb; padding-top: 24px; text-align: center; color: #6b7280;">
        <p>Thank you for your business!</p>
        <p>Questions? Contact us at {SUPPORT_ADDRESS}</p>
      </div>
    </div>
  </div>
</body>
</html>
"""


def render_receipt_text(receipt: dict[str, Any], data: dict[str, Any], user: dict[str, Any]) -> str:
    """Plain-text receipt body."""
    heavy = "=" * RULE_WIDTH
    light = "-" * RULE_WIDTH

    lines = [
        f"{BRAND_NAME.upper()} - RECEIPT",
        heavy,
        "",
        f"Receipt Number: {receipt.get('receipt_number')}",
        f"Date: {_receipt_date(receipt)}",
        f"Transaction Type: {receipt.get('transaction_type')}",
        "",
        "CUSTOMER INFORMATION",
        light,
        f"Name: {user.get('full_name') or ''}",
        f"Email: {user.get('email') or ''}",
    ]

    if data.get("service_name"):
        lines += ["", "SERVICE DETAILS", light, f"Service: {data['service_name']}"]
        if data.get("booking_date"):
            lines.append(f"Date: {data['booking_date']}")
        if data.get("provider_name"):
            lines.append(f"Provider: {data['provider_name']}")

    line_items = receipt.get("line_items") or []
    if line_items:
        lines += ["", "ITEMIZED CHARGES", light]
        for item in line_items:
            lines.append(
                f"{item.get('description')} ({item.get('quantity')}) @ ${_money(item.get('unit_price'))}"
                f" = ${_money(item.get('amount'))}"
            )

    lines += ["", f"TOTAL AMOUNT: ${_money(receipt.get('amount'))} {receipt.get('currency') or 'USD'}"]

    if data.get("deposit_amount"):
        lines += ["", "PAYMENT INFORMATION", light, f"Deposit Paid: ${_money(data['deposit_amount'])}"]
        if _positive(data.get("balance_amount")):
            lines.append(f"Balance Due: ${_money(data['balance_amount'])}")
        if data.get("balance_due_date"):
            lines.append(f"Due Date: {data['balance_due_date']}")

    lines += ["", heavy, "Thank you for your business!", f"Questions? Contact us at {SUPPORT_ADDRESS}"]
    return "\n".join(lines) + "\n"


class ReceiptService:
    """Creates receipts through the backend and emails them to the customer."""

    def __init__(self, backend: Backend, notifier: NotificationService):
        self.backend = backend
        self.notifier = notifier

    async def _create_receipt(self, request: SendReceiptRequest) -> str:
        receipt_id = await self.backend.rpc(
            "create_receipt",
            {
                "p_user_id": request.user_id,
                "p_transaction_type": request.transaction_type,
                "p_booking_id": request.booking_id,
                "p_transaction_id": request.transaction_id,
                "p_amount": request.amount,
                "p_receipt_data": request.receipt_data,
                "p_line_items": (
                    json.dumps(receipt_line_items(request.line_items), default=json_default) if request.line_items else None
                ),
            },
        )
        if not receipt_id:
            raise ValidationError(detail="Failed to create receipt")
        return str(receipt_id)

    async def _receipt_details(self, receipt_id: str) -> dict[str, Any]:
        details = await self.backend.rpc("get_receipt_details", {"p_receipt_id": receipt_id})
        if isinstance(details, dict):
            return details
        if not details:
            raise ValidationError(detail="Failed to fetch receipt details")
        return details[0]

    async def _set_email_status(self, receipt_id: str, status: str) -> None:
        values: dict[str, Any] = {"email_status": status}
        if status == "Sent":
            values["email_sent_at"] = utcnow()
        await self.backend.table("email_receipts").update(values).eq("id", receipt_id).execute()

    async def send_receipt(self, request: SendReceiptRequest) -> SendReceiptResponse:
        receipt_id = request.receipt_id or await self._create_receipt(request)
        receipt = await self._receipt_details(receipt_id)

        user = await (
            self.backend.table("profiles")
            .select("email, full_name")
            .eq("id", request.user_id)
            .maybe_single()
            .execute()
        )
        if not user:
            raise NotFoundError("user", request.user_id)

        template_name = template_for(request.transaction_type)
        template = await (
            self.backend.table("email_templates")
            .select()
            .eq("template_name", template_name)
            .eq("is_active", True)
            .maybe_single()
            .execute()
        )
        if not template:
            raise NotFoundError("email template", template_name)

        data = request.receipt_data
        subject = render_template(
            template.get("subject") or "Receipt {{receipt_number}}",
            {
                "receipt_number": receipt.get("receipt_number"),
                "service_name": data.get("service_name") or "Service",
                "amount": f"{request.amount:.2f}",
                **data,
            },
        )

        email_sent = False
        if request.send_email and self.notifier.email.configured:
            email_sent = await self._deliver(receipt_id, user, subject, receipt, data)

        logger.info(
            "Receipt processed",
            extra={
                "receipt_id": receipt_id,
                "template": template_name,
                "email_sent": email_sent,
            },
        )
        return SendReceiptResponse(
            receipt_id=receipt_id,
            receipt_number=receipt.get("receipt_number"),
            email_sent=email_sent,
        )

    async def _deliver(
        self,
        receipt_id: str,
        user: dict[str, Any],
        subject: str,
        receipt: dict[str, Any],
        data: dict[str, Any],
    ) -> bool:
        try:
            await self.notifier.send_email(
                user["email"],
                subject,
                html=render_receipt_html(receipt, data, user),
                text=render_receipt_text(receipt, data, user),
            )
        except (NotificationDeliveryError, ValidationError) as e:
            logger.warning("Receipt email failed", extra={"receipt_id": receipt_id, "error": str(e)})
            await self._set_email_status(receipt_id, "Failed")
            return False

        await self._set_email_status(receipt_id, "Sent")
        return True


def receipt_line_items(items: Optional[list[dict[str, Any]]]) -> list[dict[str, Any]]:
    """Normalise line items to description, quantity, unit_price and amount."""
    normalised = []
    for item in items or []:
        quantity = item.get("quantity", 1)
        unit_price = item.get("unit_price", item.get("unitPrice", 0))
        amount = item.get("amount")
        if amount is None:
            amount = Decimal(str(unit_price)) * Decimal(str(quantity))
        normalised.append(
            {"description": item.get("description", ""), "quantity": quantity, "unit_price": unit_price, "amount": amount}
        )
    return normalised
