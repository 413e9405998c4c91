"""Unit tests for the backend platform HTTP client."""

import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from marketplace.backend import BackendClient
from marketplace.backend.client import build_params, encode_filter
from marketplace.backend.query import Filter, Query
from marketplace.core.exceptions import BackendError


class Recorder:
    """MockTransport handler returning a canned response and keeping the requests."""

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is None:
            return httpx.Response(self.status_code)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_client(handler) -> BackendClient:
    return BackendClient(
        "https://project.backend.dev/",
        "service-key",
        transport=httpx.MockTransport(handler),
    )


def test_encode_filter():
    assert encode_filter(Filter("status", "eq", "Held")) == ("status", "eq.Held")
    assert encode_filter(Filter("pickup_at", "is", None, negate=True)) == ("pickup_at", "not.is.null")
    assert encode_filter(Filter("is_active", "is", True)) == ("is_active", "is.true")
    assert encode_filter(Filter("scheduled_date", "gte", date(2026, 10, 19))) == ("scheduled_date", "gte.2026-10-19")


def test_encode_in_filter_quotes_reserved_characters():
    assert encode_filter(Filter("status", "in", ["Held", "Disputed"])) == ("status", "in.(Held,Disputed)")
    assert encode_filter(Filter("title", "in", ['a,b', 'say "hi"'])) == (
        "title",
        'in.("a,b","say \\"hi\\"")',
    )


def test_build_params_order_and_limit():
    query = (
        Query("refunds")
        .select("id, status")
        .eq("booking_id", "b1")
        .order("created_at", ascending=False)
        .order("id")
        .limit(5)
    )

    assert build_params(query) == [
        ("select", "id, status"),
        ("booking_id", "eq.b1"),
        ("order", "created_at.desc,id.asc"),
        ("limit", "5"),
    ]


def test_unknown_operator_rejected():
    with pytest.raises(ValueError):
        Query("refunds").not_("status", "like", "x")


@pytest.mark.asyncio
async def test_unbound_query_cannot_execute():
    with pytest.raises(RuntimeError):
        await Query("refunds").execute()


@pytest.mark.asyncio
async def test_select_sends_authenticated_rest_request():
    recorder = Recorder(body=[{"id": "r1", "status": "Pending"}])
    client = make_client(recorder)

    rows = await client.table("refunds").select("id, status").eq("booking_id", "b1").execute()

    assert rows == [{"id": "r1", "status": "Pending"}]
    request = recorder.last
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/refunds"
    assert request.url.params.multi_items() == [("select", "id, status"), ("booking_id", "eq.b1")]
    assert request.headers["apikey"] == "service-key"
    assert request.headers["authorization"] == "Bearer service-key"
    await client.close()


@pytest.mark.asyncio
async def test_maybe_single_returns_none_for_no_rows():
    client = make_client(Recorder(body=[]))

    assert await client.table("refunds").select().eq("id", "missing").maybe_single().execute() is None


@pytest.mark.asyncio
async def test_single_with_no_rows_is_cardinality_error():
    client = make_client(Recorder(body=[]))

    with pytest.raises(BackendError) as exc_info:
        await client.table("refunds").select().eq("id", "missing").single().execute()

    assert exc_info.value.code == BackendError.CARDINALITY_VIOLATION
    assert exc_info.value.upstream_status == 406


@pytest.mark.asyncio
async def test_single_with_many_rows_is_cardinality_error():
    client = make_client(Recorder(body=[{"id": "a"}, {"id": "b"}]))

    with pytest.raises(BackendError):
        await client.table("refunds").select().single().execute()


@pytest.mark.asyncio
async def test_insert_serializes_decimals_and_dates():
    recorder = Recorder(status_code=201, body=[{"id": "w1"}])
    client = make_client(recorder)

    row = await (
        client.table("wallet_transactions")
        .insert({"amount": Decimal("12.50"), "scheduled": date(2026, 10, 19)})
        .select()
        .single()
        .execute()
    )

    assert row == {"id": "w1"}
    request = recorder.last
    assert request.method == "POST"
    assert request.headers["prefer"] == "return=representation"
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {"amount": "12.50", "scheduled": "2026-10-19"}


@pytest.mark.asyncio
async def test_update_uses_patch_with_filters():
    recorder = Recorder(body=[{"id": "h1", "status": "Released"}])
    client = make_client(recorder)

    rows = await (
        client.table("escrow_holds")
        .update({"status": "Released"})
        .eq("id", "h1")
        .eq("status", "Held")
        .execute()
    )

    assert rows == [{"id": "h1", "status": "Released"}]
    request = recorder.last
    assert request.method == "PATCH"
    assert request.url.params.get_list("id") == ["eq.h1"]
    assert request.url.params.get_list("status") == ["eq.Held"]


@pytest.mark.asyncio
async def test_delete_with_no_content():
    recorder = Recorder(status_code=204)
    client = make_client(recorder)

    assert await client.table("shipping_addresses").delete().eq("id", "a1").execute() is None
    assert recorder.last.method == "DELETE"


@pytest.mark.asyncio
async def test_rpc_posts_parameters():
    recorder = Recorder(body=3)
    client = make_client(recorder)

    result = await client.rpc("get_available_inventory", {"p_inventory_item_id": "item-1"})

    assert result == 3
    assert recorder.last.url.path == "/rest/v1/rpc/get_available_inventory"
    assert json.loads(recorder.last.content) == {"p_inventory_item_id": "item-1"}


@pytest.mark.asyncio
async def test_invoke_calls_function_endpoint():
    recorder = Recorder(body={"status": "InTransit"})
    client = make_client(recorder)

    result = await client.invoke("track-shipment", {"trackingNumber": "1Z999"})

    assert result == {"status": "InTransit"}
    assert recorder.last.url.path == "/functions/v1/track-shipment"


@pytest.mark.asyncio
async def test_error_response_maps_to_backend_error():
    client = make_client(Recorder(
        status_code=404,
        body={"code": "PGRST205", "message": "Could not find the table 'public.recurring_bookings'"},
    ))

    with pytest.raises(BackendError) as exc_info:
        await client.table("recurring_bookings").select().execute()

    error = exc_info.value
    assert error.status_code == 502
    assert error.upstream_status == 404
    assert error.is_missing_relation
    assert error.operation == "select:recurring_bookings"
    assert error.extensions["retryable"] is False


@pytest.mark.asyncio
async def test_server_error_is_retryable():
    client = make_client(Recorder(status_code=503, body={"message": "upstream unavailable"}))

    with pytest.raises(BackendError) as exc_info:
        await client.rpc("create_receipt", {})

    assert exc_info.value.detail == "upstream unavailable"
    assert exc_info.value.extensions["retryable"] is True


@pytest.mark.asyncio
async def test_transport_error_maps_to_backend_error():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(unreachable)

    with pytest.raises(BackendError) as exc_info:
        await client.table("bookings").select().execute()

    assert exc_info.value.upstream_status is None
    assert exc_info.value.extensions["retryable"] is True
