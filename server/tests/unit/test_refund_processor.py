"""Unit tests for issuing refunds through the payment processor."""

from decimal import Decimal

import pytest

from marketplace.core.exceptions import ConflictError, NotFoundError, PaymentProcessorError, ValidationError
from marketplace.services.refund_processor import RefundProcessor

from tests.conftest import ADMIN_ID, CUSTOMER_ID, PROVIDER_ID


@pytest.fixture
def processor(backend, gateway, fees, notifier):
    return RefundProcessor(backend, gateway, fees, notifier)


def seed_refund(backend, amount="100.00", status="Pending", **fields):
    backend.seed("refunds", {
        "id": "refund-1",
        "booking_id": "booking-1",
        "amount": amount,
        "reason": "Schedule conflict",
        "status": status,
        "requested_by": CUSTOMER_ID,
        **fields,
    })


def seed_hold(backend, amount="100.00", status="Held", payment_intent="pi_123"):
    backend.seed("bookings", {"id": "booking-1", "customer_id": CUSTOMER_ID, "status": "Cancelled"})
    backend.seed("escrow_holds", {
        "id": "hold-1",
        "booking_id": "booking-1",
        "customer_id": CUSTOMER_ID,
        "provider_id": PROVIDER_ID,
        "amount": amount,
        "status": status,
        "stripe_payment_intent_id": payment_intent,
        "held_at": "2026-10-01T10:00:00+00:00",
    })
    backend.seed("profiles", {"id": CUSTOMER_ID, "email": "customer@mail.com", "full_name": "Casey Customer"})


@pytest.mark.asyncio
async def test_full_refund(processor, backend, gateway, email_sender):
    """A refund of the whole held amount closes the hold."""
    seed_refund(backend)
    seed_hold(backend)

    result = await processor.process("refund-1", admin_id=ADMIN_ID)

    assert result.stripe_refund_id == "re_1"
    assert result.amount == Decimal("100.00")
    assert result.status == "Completed"
    assert result.escrow_status == "Refunded"

    assert gateway.refunds == [{
        "payment_intent_id": "pi_123",
        "amount": Decimal("100.00"),
        "idempotency_key": "refund_refund-1",
        "metadata": {"refund_id": "refund-1", "booking_id": "booking-1", "escrow_hold_id": "hold-1"},
    }]

    refund = backend.row("refunds", "refund-1")
    assert refund["status"] == "Completed"
    assert refund["stripe_refund_id"] == "re_1"
    assert refund["escrow_hold_id"] == "hold-1"
    assert refund["approved_by"] == ADMIN_ID
    assert refund["processed_at"] is not None

    assert backend.row("escrow_holds", "hold-1")["status"] == "Refunded"
    assert backend.row("bookings", "booking-1")["escrow_status"] == "Refunded"

    [ledger] = backend.rows("wallet_transactions")
    assert ledger["transaction_type"] == "Refund"
    assert ledger["user_id"] == CUSTOMER_ID
    assert ledger["refund_id"] == "refund-1"

    assert email_sender.sent[0]["subject"] == "Refund processed"


@pytest.mark.asyncio
async def test_partial_refund_reduces_hold(processor, backend):
    seed_refund(backend, amount="40.00")
    seed_hold(backend)

    result = await processor.process("refund-1", admin_id=ADMIN_ID)

    assert result.escrow_status == "Held"
    hold = backend.row("escrow_holds", "hold-1")
    assert hold["status"] == "Held"
    assert hold["amount"] == "60.00"
    assert hold["platform_fee"] == "6.00"
    assert hold["provider_payout"] == "54.00"
    assert "escrow_status" not in backend.row("bookings", "booking-1")


@pytest.mark.asyncio
async def test_disputed_hold_can_be_refunded(processor, backend):
    seed_refund(backend)
    seed_hold(backend, status="Disputed")

    result = await processor.process("refund-1", admin_id=ADMIN_ID)

    assert result.escrow_status == "Refunded"


@pytest.mark.asyncio
async def test_refund_linked_to_hold_by_id(processor, backend):
    seed_refund(backend, escrow_hold_id="hold-1", booking_id="other-booking")
    seed_hold(backend)

    result = await processor.process("refund-1", admin_id=ADMIN_ID)

    assert result.stripe_refund_id == "re_1"


@pytest.mark.asyncio
async def test_released_hold_cannot_be_refunded(processor, backend, gateway):
    seed_refund(backend)
    seed_hold(backend, status="Released")

    with pytest.raises(ConflictError):
        await processor.process("refund-1", admin_id=ADMIN_ID)

    assert gateway.refunds == []
    assert backend.row("refunds", "refund-1")["status"] == "Pending"


@pytest.mark.asyncio
async def test_amount_above_held_is_rejected(processor, backend, gateway):
    seed_refund(backend, amount="150.00")
    seed_hold(backend)

    with pytest.raises(ValidationError):
        await processor.process("refund-1", admin_id=ADMIN_ID)

    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_only_pending_refunds_are_processed(processor, backend):
    seed_refund(backend, status="Completed")
    seed_hold(backend)

    with pytest.raises(ConflictError) as exc_info:
        await processor.process("refund-1", admin_id=ADMIN_ID)

    assert exc_info.value.extensions["conflicting_resource"]["status"] == "Completed"


@pytest.mark.asyncio
async def test_missing_payment(processor, backend):
    seed_refund(backend)

    with pytest.raises(ConflictError):
        await processor.process("refund-1", admin_id=ADMIN_ID)


@pytest.mark.asyncio
async def test_hold_without_payment_intent(processor, backend):
    seed_refund(backend)
    seed_hold(backend, payment_intent=None)

    with pytest.raises(ConflictError):
        await processor.process("refund-1", admin_id=ADMIN_ID)


@pytest.mark.asyncio
async def test_unknown_refund(processor):
    with pytest.raises(NotFoundError):
        await processor.process("missing", admin_id=ADMIN_ID)


@pytest.mark.asyncio
async def test_processor_failure_marks_refund_failed(processor, backend, gateway):
    seed_refund(backend)
    seed_hold(backend)
    gateway.error = PaymentProcessorError("Charge has already been refunded", processor_code="charge_already_refunded")

    with pytest.raises(PaymentProcessorError):
        await processor.process("refund-1", admin_id=ADMIN_ID)

    refund = backend.row("refunds", "refund-1")
    assert refund["status"] == "Failed"
    assert refund["notes"] == "Processor error: Charge has already been refunded"
    assert backend.row("escrow_holds", "hold-1")["status"] == "Held"
    assert backend.rows("wallet_transactions") == []


@pytest.mark.asyncio
async def test_refund_completes_when_mail_is_down(processor, backend, gateway, email_sender):
    """Money has moved by the time the customer is notified; a mail outage must not undo the result."""
    seed_refund(backend)
    seed_hold(backend)
    email_sender.error = ConnectionError("connection reset by peer")

    result = await processor.process("refund-1", admin_id=ADMIN_ID)

    assert result.status == "Completed"
    assert len(gateway.refunds) == 1
    assert backend.row("refunds", "refund-1")["status"] == "Completed"
