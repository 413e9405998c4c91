"""HTTP client for the backend platform's REST, RPC and function endpoints."""

import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import httpx

from ..core.exceptions import BackendError
from ..core.observability import MetricsCollector
from .query import Filter, Query

logger = logging.getLogger(__name__)

_RESERVED_IN_LIST = set(',()"')


def json_default(value: Any) -> Any:
    """JSON encoder hook for values the platform accepts as strings."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(payload: Any) -> str:
    return json.dumps(payload, default=json_default, separators=(",", ":"))


def apply_cardinality(query: Query, rows: Any) -> Any:
    """Reduce a row list to what the query's cardinality asks for."""
    if query.cardinality is None or not isinstance(rows, list):
        return rows

    if len(rows) == 1:
        return rows[0]
    if not rows and query.cardinality == "maybe_single":
        return None

    raise BackendError(
        f"JSON object requested, multiple (or no) rows returned ({len(rows)} rows from {query.table})",
        code=BackendError.CARDINALITY_VIOLATION,
        upstream_status=406,
        operation=query.operation,
    )


class Backend(ABC):
    """Interface every backend implementation provides."""

    def table(self, name: str) -> Query:
        """Start a query against ``name``."""
        return Query(table=name, backend=self)

    @abstractmethod
    async def execute_query(self, query: Query) -> Any:
        """Run a structured query and return rows, a row, or None."""

    @abstractmethod
    async def rpc(self, function: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Call a stored procedure and return its JSON result."""

    @abstractmethod
    async def invoke(self, function: str, body: dict[str, Any]) -> Any:
        """Invoke a serverless function and return its JSON result."""

    async def close(self) -> None:
        """Release transport resources."""


def _encode_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _quote_list_item(raw: str) -> str:
    if _RESERVED_IN_LIST.intersection(raw):
        escaped = raw.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return raw


def encode_filter(item: Filter) -> tuple[str, str]:
    """Translate one filter into a PostgREST query parameter."""
    if item.operator == "in":
        inner = ",".join(_quote_list_item(_encode_value(v)) for v in item.value)
        expression = f"in.({inner})"
    else:
        expression = f"{item.operator}.{_encode_value(item.value)}"

    if item.negate:
        expression = f"not.{expression}"

    return item.column, expression


def build_params(query: Query) -> list[tuple[str, str]]:
    """Build the ordered query-string parameters for ``query``."""
    params: list[tuple[str, str]] = []

    if query.action == "select" or query.returning:
        params.append(("select", query.columns))

    params.extend(encode_filter(item) for item in query.filters)

    if query.orders:
        params.append((
            "order",
            ",".join(f"{o.column}.{'asc' if o.ascending else 'desc'}" for o in query.orders),
        ))

    if query.limit_count is not None:
        params.append(("limit", str(query.limit_count)))

    return params


class BackendClient(Backend):
    """
    Backend implementation over the platform's HTTP interface.

    Tables are served under ``/rest/v1``, stored procedures under
    ``/rest/v1/rpc`` and serverless functions under ``/functions/v1``. All
    requests authenticate with the service role key.
    """

    _METHODS = {"select": "GET", "insert": "POST", "update": "PATCH", "delete": "DELETE"}

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Accept": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings) -> "BackendClient":
        return cls(
            base_url=settings.backend_url,
            service_key=settings.backend_service_key,
            timeout=settings.backend_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def execute_query(self, query: Query) -> Any:
        method = self._METHODS[query.action]
        headers = {}
        content = None

        if query.action in ("insert", "update"):
            content = dumps(query.payload)
            headers["Content-Type"] = "application/json"
        if query.action != "select":
            headers["Prefer"] = "return=representation" if query.returning else "return=minimal"

        data = await self._send(
            method,
            f"/rest/v1/{query.table}",
            operation=query.operation,
            params=build_params(query),
            content=content,
            headers=headers,
        )

        if data is None and query.action == "select":
            data = []
        return apply_cardinality(query, data)

    async def rpc(self, function: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self._send(
            "POST",
            f"/rest/v1/rpc/{function}",
            operation=f"rpc:{function}",
            content=dumps(params or {}),
            headers={"Content-Type": "application/json"},
        )

    async def invoke(self, function: str, body: dict[str, Any]) -> Any:
        return await self._send(
            "POST",
            f"/functions/v1/{function}",
            operation=f"function:{function}",
            content=dumps(body),
            headers={"Content-Type": "application/json"},
        )

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[list[tuple[str, str]]] = None,
        content: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        started = time.perf_counter()
        try:
            response = await self._client.request(method, path, params=params, content=content, headers=headers)
        except httpx.HTTPError as e:
            MetricsCollector.record_backend_request(operation, "transport_error", time.perf_counter() - started)
            logger.error(
                "Backend request failed in transport",
                extra={"operation": operation, "error": str(e)},
            )
            raise BackendError(f"Backend unreachable: {e}", operation=operation) from e

        duration = time.perf_counter() - started

        if response.status_code >= 400:
            MetricsCollector.record_backend_request(operation, "error", duration)
            raise self._error_from_response(response, operation)

        MetricsCollector.record_backend_request(operation, "ok", duration)
        logger.debug(
            "Backend request completed",
            extra={"operation": operation, "status_code": response.status_code, "duration_ms": round(duration * 1000, 2)},
        )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_from_response(response: httpx.Response, operation: str) -> BackendError:
        code = None
        message = response.text or response.reason_phrase
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("message") or body.get("error") or message

        logger.warning(
            "Backend request returned an error",
            extra={
                "operation": operation,
                "status_code": response.status_code,
                "code": code,
                "error_message": message,
            },
        )
        return BackendError(message, code=code, upstream_status=response.status_code, operation=operation)
