"""Unit tests for the cancellation policy, customer refund requests and refund administration."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from marketplace.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from marketplace.schemas.refunds import ManualRefundRequest, RefundStatus, SubmitRefundRequest
from marketplace.services.refund_service import (
    AdminRefundService,
    RefundService,
    calculate_expected_refund,
    refund_percentage_for,
    refund_reason_label,
    validate_refund_reason,
)

from tests.conftest import ADMIN_ID, CUSTOMER_ID, PROVIDER_ID

TODAY = date(2026, 10, 19)


@pytest.fixture
def refunds(backend):
    return RefundService(backend)


@pytest.fixture
def admin_refunds(backend):
    return AdminRefundService(backend)


def seed_booking(backend, booking_id="booking-1", scheduled="2026-10-29", status="Confirmed", price="80.00", **fields):
    backend.seed("bookings", {
        "id": booking_id,
        "customer_id": CUSTOMER_ID,
        "provider_id": PROVIDER_ID,
        "title": "Deep clean",
        "price": price,
        "scheduled_date": scheduled,
        "status": status,
        **fields,
    })


@pytest.mark.parametrize(
    "days, percentage",
    [(30, 100), (7, 100), (6, 50), (3, 50), (2, 25), (1, 25), (0, 0), (-4, 0)],
)
def test_refund_tiers(days, percentage):
    assert refund_percentage_for(days)[0] == percentage


def test_calculate_expected_refund():
    expected = calculate_expected_refund(Decimal("80.00"), 2)

    assert expected.percentage == 25
    assert expected.amount == Decimal("20.00")


def test_validate_refund_reason():
    validate_refund_reason("ScheduleConflict")
    validate_refund_reason("Other", "Moving out of town")

    with pytest.raises(ValidationError):
        validate_refund_reason("")
    with pytest.raises(ValidationError) as exc_info:
        validate_refund_reason("Other", "  ")
    assert "notes" in exc_info.value.extensions["errors"]


def test_reason_labels():
    assert refund_reason_label("ScheduleConflict") == "Schedule conflict"
    assert refund_reason_label("NoShow", admin=True) == "No Show"
    assert refund_reason_label("Unlisted") == "Unlisted"


@pytest.mark.asyncio
async def test_eligibility_full_refund(refunds, backend):
    seed_booking(backend)

    eligibility = await refunds.check_eligibility("booking-1", today=TODAY)

    assert eligibility.eligible is True
    assert eligibility.refund_percentage == 100
    assert eligibility.refund_amount == Decimal("80.00")
    assert eligibility.days_until_booking == 10


@pytest.mark.asyncio
async def test_eligibility_partial_refund(refunds, backend):
    seed_booking(backend, scheduled="2026-10-23")

    eligibility = await refunds.check_eligibility("booking-1", today=TODAY)

    assert eligibility.refund_percentage == 50
    assert eligibility.refund_amount == Decimal("40.00")


@pytest.mark.asyncio
async def test_eligibility_same_day(refunds, backend):
    seed_booking(backend, scheduled="2026-10-19")

    eligibility = await refunds.check_eligibility("booking-1", today=TODAY)

    assert eligibility.eligible is False
    assert eligibility.refund_percentage == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["Completed", "Cancelled"])
async def test_finished_bookings_are_ineligible(refunds, backend, status):
    seed_booking(backend, status=status)

    eligibility = await refunds.check_eligibility("booking-1", today=TODAY)

    assert eligibility.eligible is False
    assert eligibility.reason


@pytest.mark.asyncio
async def test_existing_refund_makes_booking_ineligible(refunds, backend):
    seed_booking(backend)
    backend.seed("refunds", {"booking_id": "booking-1", "amount": "10", "reason": "Other", "status": "Pending"})

    eligibility = await refunds.check_eligibility("booking-1", today=TODAY)

    assert eligibility.eligible is False
    assert eligibility.reason == "Refund already pending"


@pytest.mark.asyncio
async def test_eligibility_unknown_booking(refunds):
    with pytest.raises(NotFoundError):
        await refunds.check_eligibility("missing", today=TODAY)


@pytest.mark.asyncio
async def test_submit_refund_request(refunds, backend):
    """A request is recorded as Pending and the booking is cancelled."""
    seed_booking(backend)

    refund = await refunds.submit_refund_request(
        CUSTOMER_ID,
        SubmitRefundRequest(booking_id="booking-1", amount=Decimal("80"), reason="ScheduleConflict"),
        today=TODAY,
    )

    assert refund.status == RefundStatus.PENDING
    assert refund.amount == Decimal("80.00")
    assert refund.requested_by == CUSTOMER_ID

    booking = backend.row("bookings", "booking-1")
    assert booking["status"] == "Cancelled"
    assert booking["refund_requested"] is True
    assert booking["cancellation_reason"] == "ScheduleConflict"


@pytest.mark.asyncio
async def test_submit_for_someone_elses_booking(refunds, backend):
    seed_booking(backend)

    with pytest.raises(AuthorizationError):
        await refunds.submit_refund_request(
            PROVIDER_ID,
            SubmitRefundRequest(booking_id="booking-1", amount=Decimal("10"), reason="Cancelled"),
            today=TODAY,
        )


@pytest.mark.asyncio
async def test_submit_amount_above_policy(refunds, backend):
    seed_booking(backend, scheduled="2026-10-21")

    with pytest.raises(ValidationError):
        await refunds.submit_refund_request(
            CUSTOMER_ID,
            SubmitRefundRequest(booking_id="booking-1", amount=Decimal("40"), reason="Cancelled"),
            today=TODAY,
        )

    assert backend.rows("refunds") == []


@pytest.mark.asyncio
async def test_submit_ineligible_booking(refunds, backend):
    seed_booking(backend, status="Completed")

    with pytest.raises(ConflictError):
        await refunds.submit_refund_request(
            CUSTOMER_ID,
            SubmitRefundRequest(booking_id="booking-1", amount=Decimal("10"), reason="Cancelled"),
            today=TODAY,
        )


@pytest.mark.asyncio
async def test_submit_other_requires_notes(refunds, backend):
    seed_booking(backend)

    with pytest.raises(ValidationError):
        await refunds.submit_refund_request(
            CUSTOMER_ID,
            SubmitRefundRequest(booking_id="booking-1", amount=Decimal("10"), reason="Other"),
            today=TODAY,
        )


@pytest.mark.asyncio
async def test_cancel_refund_request(refunds, backend):
    [row] = backend.seed("refunds", {
        "booking_id": "booking-1", "amount": "10", "reason": "Cancelled", "status": "Pending",
        "requested_by": CUSTOMER_ID,
    })

    cancelled = await refunds.cancel_refund_request(row["id"], CUSTOMER_ID)

    assert cancelled.status == RefundStatus.FAILED
    assert cancelled.notes == "Cancelled by customer"

    with pytest.raises(ConflictError):
        await refunds.cancel_refund_request(row["id"], CUSTOMER_ID)


@pytest.mark.asyncio
async def test_cancel_someone_elses_request(refunds, backend):
    [row] = backend.seed("refunds", {
        "booking_id": "booking-1", "amount": "10", "reason": "Cancelled", "status": "Pending",
        "requested_by": CUSTOMER_ID,
    })

    with pytest.raises(AuthorizationError):
        await refunds.cancel_refund_request(row["id"], PROVIDER_ID)


@pytest.mark.asyncio
async def test_customer_refunds_and_stats(refunds, backend):
    seed_booking(backend)
    backend.seed(
        "refunds",
        {"booking_id": "booking-1", "amount": "10", "reason": "Cancelled", "status": "Completed",
         "requested_by": CUSTOMER_ID},
        {"booking_id": "booking-1", "amount": "15", "reason": "Cancelled", "status": "Completed",
         "requested_by": CUSTOMER_ID},
        {"booking_id": "booking-1", "amount": "5", "reason": "Cancelled", "status": "Pending",
         "requested_by": CUSTOMER_ID},
        {"booking_id": "booking-1", "amount": "99", "reason": "Cancelled", "status": "Completed",
         "requested_by": "someone-else"},
    )

    customer_refunds = await refunds.get_customer_refunds(CUSTOMER_ID)
    stats = await refunds.get_customer_stats(CUSTOMER_ID)

    assert [refund.amount for refund in customer_refunds] == [Decimal("5"), Decimal("15"), Decimal("10")]
    assert customer_refunds[0].booking.title == "Deep clean"
    assert stats.total_refunds == 3
    assert stats.pending_refunds == 1
    assert stats.completed_refunds == 2
    assert stats.total_refunded_amount == Decimal("25")


@pytest.mark.asyncio
async def test_approve_refund(admin_refunds, backend):
    [row] = backend.seed("refunds", {"booking_id": "b1", "amount": "10", "reason": "Cancelled", "status": "Pending"})

    approved = await admin_refunds.approve_refund(row["id"], ADMIN_ID, notes="Verified")

    assert approved.status == RefundStatus.COMPLETED
    assert approved.approved_by == ADMIN_ID
    assert approved.notes == "Verified"
    assert approved.processed_at is not None


@pytest.mark.asyncio
async def test_transitions_only_from_pending(admin_refunds, backend):
    [row] = backend.seed("refunds", {"booking_id": "b1", "amount": "10", "reason": "Cancelled", "status": "Pending"})
    await admin_refunds.reject_refund(row["id"], ADMIN_ID, "Outside policy")

    with pytest.raises(ConflictError) as exc_info:
        await admin_refunds.approve_refund(row["id"], ADMIN_ID)

    assert exc_info.value.extensions["conflicting_resource"]["status"] == "Failed"
    assert backend.row("refunds", row["id"])["notes"] == "Rejected: Outside policy"


@pytest.mark.asyncio
async def test_transition_unknown_refund(admin_refunds):
    with pytest.raises(NotFoundError):
        await admin_refunds.reject_refund("missing", ADMIN_ID, "No")


@pytest.mark.asyncio
async def test_mark_processed_manually(admin_refunds, backend):
    [row] = backend.seed("refunds", {"booking_id": "b1", "amount": "10", "reason": "Cancelled", "status": "Pending"})

    refund = await admin_refunds.mark_processed_manually(row["id"], "re_manual")

    assert refund.status == RefundStatus.COMPLETED
    assert refund.stripe_refund_id == "re_manual"


@pytest.mark.asyncio
async def test_create_manual_refund(admin_refunds):
    refund = await admin_refunds.create_manual_refund(ADMIN_ID, ManualRefundRequest(
        booking_id="booking-1",
        amount=Decimal("12.345"),
        reason="NoShow",
        requested_by=CUSTOMER_ID,
    ))

    assert refund.status == RefundStatus.PENDING
    assert refund.amount == Decimal("12.35")
    assert refund.reason == "NoShow"
    assert refund.approved_by == ADMIN_ID


@pytest.mark.asyncio
async def test_list_refunds_filters_and_search(admin_refunds, backend):
    seed_booking(backend, "booking-clean", title="Deep clean")
    seed_booking(backend, "booking-lawn", title="Lawn mowing")
    backend.seed("profiles", {"id": CUSTOMER_ID, "full_name": "Casey Customer", "email": "casey@mail.com"})
    backend.seed(
        "refunds",
        {"id": "r-clean", "booking_id": "booking-clean", "amount": "10", "reason": "Cancelled",
         "status": "Pending", "requested_by": CUSTOMER_ID},
        {"id": "r-lawn", "booking_id": "booking-lawn", "amount": "20", "reason": "NoShow",
         "status": "Completed", "requested_by": "user-other"},
    )

    assert [r.id for r in await admin_refunds.list_refunds()] == ["r-lawn", "r-clean"]
    assert [r.id for r in await admin_refunds.list_refunds(status=RefundStatus.PENDING)] == ["r-clean"]
    assert [r.id for r in await admin_refunds.list_refunds(search="LAWN")] == ["r-lawn"]
    assert [r.id for r in await admin_refunds.list_refunds(search="casey@")] == ["r-clean"]
    assert await admin_refunds.list_refunds(search="nothing matches") == []


@pytest.mark.asyncio
async def test_metrics(admin_refunds, backend):
    backend.seed(
        "refunds",
        {"booking_id": "b1", "amount": "10", "reason": "x", "status": "Pending", "created_at": "2026-10-02T09:00:00+00:00"},
        {"booking_id": "b2", "amount": "20", "reason": "x", "status": "Completed", "created_at": "2026-10-15T09:00:00+00:00"},
        {"booking_id": "b3", "amount": "30", "reason": "x", "status": "Failed", "created_at": "2026-09-30T23:59:00+00:00"},
    )

    metrics = await admin_refunds.get_metrics(now=datetime(2026, 10, 19, 12, tzinfo=timezone.utc))

    assert metrics.total_refunds == 3
    assert metrics.pending_refunds == 1
    assert metrics.completed_refunds == 1
    assert metrics.failed_refunds == 1
    assert metrics.total_refunded_amount == Decimal("60")
    assert metrics.avg_refund_amount == Decimal("20.00")
    assert metrics.refunds_this_month == 2
    assert metrics.refund_amount_this_month == Decimal("30")
