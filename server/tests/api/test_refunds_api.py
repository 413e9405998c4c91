"""API tests for customer refund requests and refund administration."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tests.conftest import ADMIN_ID, CUSTOMER_ID, PROVIDER_ID


def seed_booking(backend, booking_id="booking-1", days_ahead=20, status="Confirmed"):
    scheduled = datetime.now(timezone.utc).date() + timedelta(days=days_ahead)
    backend.seed("bookings", {
        "id": booking_id,
        "customer_id": CUSTOMER_ID,
        "provider_id": PROVIDER_ID,
        "title": "Deep clean",
        "price": "80.00",
        "scheduled_date": scheduled.isoformat(),
        "status": status,
    })


def seed_refund(backend, refund_id="refund-1", status="Pending", requested_by=CUSTOMER_ID, **fields):
    backend.seed("refunds", {
        "id": refund_id,
        "booking_id": "booking-1",
        "amount": "10.00",
        "reason": "Cancelled",
        "status": status,
        "requested_by": requested_by,
        **fields,
    })


@pytest.mark.asyncio
async def test_policy_is_public(test_client):
    response = await test_client.get("/v1/refunds/policy")

    assert response.status_code == 200
    assert len(response.json()["rules"]) >= 4


@pytest.mark.asyncio
async def test_eligibility(test_client, backend, customer_headers):
    seed_booking(backend)

    response = await test_client.get("/v1/refunds/eligibility/booking-1", headers=customer_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["eligible"] is True
    assert data["refund_percentage"] == 100
    assert Decimal(data["refund_amount"]) == Decimal("80")


@pytest.mark.asyncio
async def test_eligibility_unknown_booking(test_client, customer_headers):
    response = await test_client.get("/v1/refunds/eligibility/missing", headers=customer_headers)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_submit_refund_request(test_client, backend, customer_headers):
    seed_booking(backend)

    response = await test_client.post(
        "/v1/refunds",
        json={"booking_id": "booking-1", "amount": "80", "reason": "ScheduleConflict"},
        headers=customer_headers,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "Pending"
    assert data["requested_by"] == CUSTOMER_ID
    assert backend.row("bookings", "booking-1")["status"] == "Cancelled"


@pytest.mark.asyncio
async def test_submit_requires_authentication(test_client, backend):
    seed_booking(backend)

    response = await test_client.post(
        "/v1/refunds", json={"booking_id": "booking-1", "amount": "80", "reason": "ScheduleConflict"}
    )

    assert response.status_code == 401
    assert backend.rows("refunds") == []


@pytest.mark.asyncio
async def test_submit_rejects_non_positive_amount(test_client, backend, customer_headers):
    seed_booking(backend)

    response = await test_client.post(
        "/v1/refunds",
        json={"booking_id": "booking-1", "amount": "0", "reason": "ScheduleConflict"},
        headers=customer_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_submit_above_policy(test_client, backend, customer_headers):
    seed_booking(backend, days_ahead=2)

    response = await test_client.post(
        "/v1/refunds",
        json={"booking_id": "booking-1", "amount": "80", "reason": "ScheduleConflict"},
        headers=customer_headers,
    )

    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/problem+json")


@pytest.mark.asyncio
async def test_list_and_stats(test_client, backend, customer_headers):
    seed_refund(backend, "refund-1", status="Completed")
    seed_refund(backend, "refund-2")
    seed_refund(backend, "refund-other", requested_by="user-other")

    listed = await test_client.get("/v1/refunds", headers=customer_headers)
    stats = await test_client.get("/v1/refunds/stats", headers=customer_headers)

    assert [refund["id"] for refund in listed.json()] == ["refund-2", "refund-1"]
    assert stats.json()["total_refunds"] == 2
    assert stats.json()["pending_refunds"] == 1
    assert Decimal(stats.json()["total_refunded_amount"]) == Decimal("10")


@pytest.mark.asyncio
async def test_get_refund_hides_other_customers(test_client, backend, customer_headers, provider_headers, admin_headers):
    seed_refund(backend)

    assert (await test_client.get("/v1/refunds/refund-1", headers=customer_headers)).status_code == 200
    assert (await test_client.get("/v1/refunds/refund-1", headers=provider_headers)).status_code == 404
    assert (await test_client.get("/v1/refunds/refund-1", headers=admin_headers)).status_code == 200


@pytest.mark.asyncio
async def test_booking_refund(test_client, backend, customer_headers):
    seed_refund(backend)

    found = await test_client.get("/v1/refunds/booking/booking-1", headers=customer_headers)
    missing = await test_client.get("/v1/refunds/booking/booking-2", headers=customer_headers)

    assert found.json()["id"] == "refund-1"
    assert missing.status_code == 200
    assert missing.json() is None


@pytest.mark.asyncio
async def test_cancel_refund_request(test_client, backend, customer_headers):
    seed_refund(backend)

    response = await test_client.post("/v1/refunds/refund-1/cancel", headers=customer_headers)
    again = await test_client.post("/v1/refunds/refund-1/cancel", headers=customer_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "Failed"
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_admin_routes_require_admin(test_client, customer_headers):
    response = await test_client.get("/v1/admin/refunds", headers=customer_headers)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_list_with_filter(test_client, backend, admin_headers):
    seed_refund(backend, "refund-1", status="Completed")
    seed_refund(backend, "refund-2")

    response = await test_client.get("/v1/admin/refunds", params={"status": "Pending"}, headers=admin_headers)

    assert response.status_code == 200
    assert [refund["id"] for refund in response.json()] == ["refund-2"]


@pytest.mark.asyncio
async def test_admin_list_rejects_unknown_status(test_client, admin_headers):
    response = await test_client.get("/v1/admin/refunds", params={"status": "Lost"}, headers=admin_headers)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_create_manual_refund(test_client, admin_headers):
    response = await test_client.post(
        "/v1/admin/refunds",
        json={"booking_id": "booking-1", "amount": "12.50", "reason": "NoShow", "requested_by": CUSTOMER_ID},
        headers=admin_headers,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "Pending"
    assert data["approved_by"] == ADMIN_ID


@pytest.mark.asyncio
async def test_admin_approve_then_reject_conflicts(test_client, backend, admin_headers):
    seed_refund(backend)

    approved = await test_client.post(
        "/v1/admin/refunds/refund-1/approve", json={"notes": "Goodwill"}, headers=admin_headers
    )
    rejected = await test_client.post(
        "/v1/admin/refunds/refund-1/reject", json={"reason": "Too late"}, headers=admin_headers
    )

    assert approved.status_code == 200
    assert approved.json()["status"] == "Completed"
    assert rejected.status_code == 409


@pytest.mark.asyncio
async def test_admin_reject(test_client, backend, admin_headers):
    seed_refund(backend)

    response = await test_client.post(
        "/v1/admin/refunds/refund-1/reject", json={"reason": "Outside policy"}, headers=admin_headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "Failed"


@pytest.mark.asyncio
async def test_admin_mark_processed(test_client, backend, admin_headers):
    seed_refund(backend)

    response = await test_client.post(
        "/v1/admin/refunds/refund-1/mark-processed", json={"stripe_refund_id": "re_dashboard"}, headers=admin_headers
    )

    assert response.status_code == 200
    assert response.json()["stripe_refund_id"] == "re_dashboard"


@pytest.mark.asyncio
async def test_admin_metrics_and_history(test_client, backend, admin_headers):
    seed_refund(backend, "refund-1", status="Completed")
    seed_refund(backend, "refund-2", status="Failed")

    metrics = await test_client.get("/v1/admin/refunds/metrics", headers=admin_headers)
    history = await test_client.get("/v1/admin/refunds/booking/booking-1", headers=admin_headers)

    assert metrics.json()["total_refunds"] == 2
    assert metrics.json()["failed_refunds"] == 1
    assert {refund["id"] for refund in history.json()} == {"refund-1", "refund-2"}
