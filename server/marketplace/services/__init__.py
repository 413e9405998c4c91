"""Service layer package."""

from .availability_service import AvailabilityService
from .escrow_service import EscrowService
from .fee_service import FeeService
from .idempotency_service import IdempotencyService
from .inventory_service import InventoryService
from .notification_service import EmailSender, NotificationService, SmsSender
from .payment_gateway import PaymentGateway, StripeGateway
from .receipt_service import ReceiptService
from .recurring_booking_service import RecurringBookingService
from .refund_processor import RefundProcessor
from .refund_service import AdminRefundService, RefundService
from .shipping_service import ShippingService

__all__ = [
    "AdminRefundService",
    "AvailabilityService",
    "EmailSender",
    "EscrowService",
    "FeeService",
    "IdempotencyService",
    "InventoryService",
    "NotificationService",
    "PaymentGateway",
    "ReceiptService",
    "RecurringBookingService",
    "RefundProcessor",
    "RefundService",
    "ShippingService",
    "SmsSender",
    "StripeGateway",
]
