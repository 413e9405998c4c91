"""In-memory stand-ins for the backend platform, payment processor and message providers."""

import copy
import itertools
import json
import operator
import re
import uuid
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from marketplace.backend.client import Backend, apply_cardinality, dumps
from marketplace.backend.query import Filter, Query
from marketplace.backend.rows import parse_datetime, utcnow
from marketplace.core.exceptions import BackendError, PaymentProcessorError
from marketplace.services.fee_service import to_minor_units
from marketplace.services.notification_service import SmsDelivery
from marketplace.services.payment_gateway import PaymentGateway, RefundResult, TransferResult

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")

_COMPARISONS = {
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}


def _normalise(value: Any) -> Any:
    """Round-trip through JSON the way values come back from the platform."""
    return json.loads(dumps(value))


def _as_datetime(value: Any):
    if isinstance(value, str) and _DATE_PREFIX.match(value):
        try:
            return parse_datetime(value)
        except ValueError:
            return None
    return None


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _comparable(left: Any, right: Any) -> tuple[Any, Any]:
    if isinstance(left, bool) or isinstance(right, bool):
        return left, right

    left_dt, right_dt = _as_datetime(left), _as_datetime(right)
    if left_dt is not None and right_dt is not None:
        return left_dt, right_dt

    left_num, right_num = _as_decimal(left), _as_decimal(right)
    if left_num is not None and right_num is not None:
        return left_num, right_num

    return str(left), str(right)


def _equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    a, b = _comparable(left, right)
    return a == b


def _like(pattern: str) -> re.Pattern:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def row_matches(row: dict[str, Any], item: Filter) -> bool:
    """Evaluate one filter against a stored row with SQL NULL semantics."""
    actual = row.get(item.column)
    expected = _normalise(item.value)

    if item.operator == "is":
        result = actual is None if expected is None else actual == expected
    elif actual is None:
        return False
    elif item.operator == "in":
        result = any(_equal(actual, value) for value in expected)
    elif item.operator == "ilike":
        result = _like(expected).fullmatch(str(actual)) is not None
    elif expected is None:
        return False
    else:
        result = _COMPARISONS[item.operator](*_comparable(actual, expected))

    return not result if item.negate else result


def _sort_key(value: Any) -> Any:
    parsed = _as_datetime(value)
    return parsed if parsed is not None else value


class InMemoryBackend(Backend):
    """
    Backend that keeps tables as lists of JSON rows.

    Queries are evaluated the way PostgREST would: filters, ordering (nulls
    last ascending, first descending), limit and cardinality. Inserted rows
    get an ``id`` and a strictly increasing ``created_at`` when missing.
    Stored procedures and serverless functions are registered per test.
    """

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.missing_tables: set[str] = set()
        self.failures: dict[str, BackendError] = {}
        self.queries: list[Query] = []
        self.rpc_handlers: dict[str, Any] = {}
        self.function_handlers: dict[str, Any] = {}
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []
        self.invocations: list[tuple[str, dict[str, Any]]] = []
        self._sequence = itertools.count(1)
        self.closed = False

    # Test setup

    def _new_row(self, values: dict[str, Any]) -> dict[str, Any]:
        created_at = utcnow() + timedelta(microseconds=next(self._sequence))
        return {"id": str(uuid.uuid4()), "created_at": created_at.isoformat(), **_normalise(values)}

    def seed(self, table: str, *rows: dict[str, Any]) -> list[dict[str, Any]]:
        stored = [self._new_row(values) for values in rows]
        self.tables.setdefault(table, []).extend(stored)
        return copy.deepcopy(stored)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    def row(self, table: str, row_id: str) -> Optional[dict[str, Any]]:
        return next((row for row in self.rows(table) if row.get("id") == row_id), None)

    def on_rpc(self, function: str, handler: Any) -> None:
        """Register a result, or a callable taking the params, for a stored procedure."""
        self.rpc_handlers[function] = handler

    def on_invoke(self, function: str, handler: Any) -> None:
        self.function_handlers[function] = handler

    def fail(self, operation: str, error: Optional[BackendError] = None) -> None:
        """Make every query with this ``action:table`` label raise."""
        self.failures[operation] = error or BackendError(
            "Injected backend failure", upstream_status=500, operation=operation
        )

    # Backend interface

    async def execute_query(self, query: Query) -> Any:
        self.queries.append(query)

        if query.table in self.missing_tables:
            raise BackendError(
                f"Could not find the table 'public.{query.table}' in the schema cache",
                code=BackendError.MISSING_RELATION,
                upstream_status=404,
                operation=query.operation,
            )
        if query.operation in self.failures:
            raise self.failures[query.operation]

        table = self.tables.setdefault(query.table, [])

        if query.action == "insert":
            payload = query.payload if isinstance(query.payload, list) else [query.payload]
            affected = [self._new_row(values) for values in payload]
            table.extend(affected)
        elif query.action == "update":
            affected = [row for row in table if self._matches(row, query)]
            values = _normalise(query.payload)
            for row in affected:
                row.update(values)
        elif query.action == "delete":
            affected = [row for row in table if self._matches(row, query)]
            self.tables[query.table] = [row for row in table if row not in affected]
        else:
            affected = self._select(table, query)

        result = [self._project(row, query.columns) for row in affected]
        return apply_cardinality(query, result)

    async def rpc(self, function: str, params: Optional[dict[str, Any]] = None) -> Any:
        params = params or {}
        self.rpc_calls.append((function, params))
        return self._dispatch(self.rpc_handlers, function, params, "rpc", "PGRST202")

    async def invoke(self, function: str, body: dict[str, Any]) -> Any:
        self.invocations.append((function, body))
        return self._dispatch(self.function_handlers, function, body, "function", None)

    async def close(self) -> None:
        self.closed = True

    # Evaluation

    @staticmethod
    def _matches(row: dict[str, Any], query: Query) -> bool:
        return all(row_matches(row, item) for item in query.filters)

    def _select(self, table: list[dict[str, Any]], query: Query) -> list[dict[str, Any]]:
        rows = [row for row in table if self._matches(row, query)]

        for order in reversed(query.orders):
            present = [row for row in rows if row.get(order.column) is not None]
            missing = [row for row in rows if row.get(order.column) is None]
            present.sort(key=lambda row: _sort_key(row[order.column]), reverse=not order.ascending)
            rows = present + missing if order.ascending else missing + present

        if query.limit_count is not None:
            rows = rows[:query.limit_count]
        return rows

    @staticmethod
    def _project(row: dict[str, Any], columns: str) -> dict[str, Any]:
        if columns.strip() == "*":
            return copy.deepcopy(row)
        names = [name.strip() for name in columns.split(",") if name.strip()]
        return {name: copy.deepcopy(row.get(name)) for name in names}

    @staticmethod
    def _dispatch(
        handlers: dict[str, Any],
        function: str,
        params: dict[str, Any],
        kind: str,
        missing_code: Optional[str],
    ) -> Any:
        if function not in handlers:
            raise BackendError(
                f"Could not find the {kind} {function}",
                code=missing_code,
                upstream_status=404,
                operation=f"{kind}:{function}",
            )
        handler = handlers[function]
        result = handler(params) if callable(handler) else handler
        return copy.deepcopy(result)


class FakeGateway(PaymentGateway):
    """Records money movement and deduplicates on idempotency keys like the processor does."""

    def __init__(self):
        self.refunds: list[dict[str, Any]] = []
        self.transfers: list[dict[str, Any]] = []
        self.error: Optional[PaymentProcessorError] = None
        self._results: dict[str, Any] = {}
        self._ids = itertools.count(1)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundResult:
        if self.error is not None:
            raise self.error
        if idempotency_key in self._results:
            return self._results[idempotency_key]

        self.refunds.append({
            "payment_intent_id": payment_intent_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
            "metadata": metadata or {},
        })
        result = RefundResult(id=f"re_{next(self._ids)}", status="succeeded", amount_minor=to_minor_units(amount))
        self._results[idempotency_key] = result
        return result

    async def create_transfer(
        self,
        destination_account: str,
        amount: Decimal,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> TransferResult:
        if self.error is not None:
            raise self.error
        if idempotency_key in self._results:
            return self._results[idempotency_key]

        self.transfers.append({
            "destination": destination_account,
            "amount": amount,
            "idempotency_key": idempotency_key,
            "transfer_group": transfer_group,
            "metadata": metadata or {},
        })
        result = TransferResult(
            id=f"tr_{next(self._ids)}",
            amount_minor=to_minor_units(amount),
            destination=destination_account,
        )
        self._results[idempotency_key] = result
        return result


class RecordingSmsSender:
    """SMS provider double; ``error`` is raised from every send when set."""

    def __init__(self, configured: bool = True, error: Optional[Exception] = None):
        self.configured = configured
        self.error = error
        self.sent: list[tuple[str, str]] = []

    async def send(self, to: str, body: str) -> SmsDelivery:
        if self.error is not None:
            raise self.error
        self.sent.append((to, body))
        return SmsDelivery(sid=f"SM{len(self.sent):032d}", status="queued")

    async def close(self) -> None:
        pass


class RecordingEmailSender:
    def __init__(self, configured: bool = True, error: Optional[Exception] = None):
        self.configured = configured
        self.error = error
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        to: str,
        subject: str,
        html: Optional[str] = None,
        text: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text, "reply_to": reply_to})
        return f"email_{len(self.sent)}"

