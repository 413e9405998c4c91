"""
Stored responses for the money-moving functions.

``process-refund`` and ``release-escrow`` accept an ``Idempotency-Key``. The
first completed call under a key is persisted together with a hash of its
request body; a retry with the same key and body gets that response back
instead of moving money twice. A retry with the same key and a different
body is rejected.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..backend.client import json_default
from ..core.exceptions import PROBLEM_BASE_URI, ProblemDetailsException
from ..models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=json_default)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StoredResponse(NamedTuple):
    status_code: int
    body: dict[str, Any]
    headers: Optional[dict[str, str]]


class IdempotencyMismatchError(ProblemDetailsException):
    """The key was already spent on a request with a different body (422)."""

    def __init__(self, idempotency_key: str, method: str):
        super().__init__(
            status_code=422,
            title="Idempotency Key Mismatch",
            detail=f"Idempotency key '{idempotency_key}' was already used for a different {method} request",
            type_uri=f"{PROBLEM_BASE_URI}/idempotency-key-mismatch",
            extensions={
                "code": "IDEMPOTENCY_KEY_MISMATCH",
                "retryable": False,
                "idempotency_key": idempotency_key,
                "method": method,
            },
        )


class IdempotencyService:
    """Lookup, storage and expiry of idempotency records, scoped per function."""

    def __init__(self, db: AsyncSession, ttl_hours: int = 24):
        self.db = db
        self.ttl_hours = ttl_hours

    @staticmethod
    def compute_request_hash(request_body: dict[str, Any]) -> str:
        """SHA-256 of the request body with keys sorted at every level."""
        return hashlib.sha256(_canonical_json(request_body).encode("utf-8")).hexdigest()

    async def _live_record(self, idempotency_key: str, method: str) -> Optional[IdempotencyRecord]:
        result = await self.db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.method == method,
                IdempotencyRecord.expires_at > _now(),
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _stored_headers(record: IdempotencyRecord) -> Optional[dict[str, str]]:
        if not record.response_headers:
            return None
        try:
            return json.loads(record.response_headers)
        except ValueError:
            logger.warning(
                "Unreadable headers on idempotency record",
                extra={"idempotency_key": record.idempotency_key, "method": record.method},
            )
            return None

    async def check_idempotency(
        self,
        idempotency_key: str,
        method: str,
        request_body: dict[str, Any],
    ) -> Optional[StoredResponse]:
        """
        Return the stored response for a retried request, or None for a new one.

        Expired records count as absent. Raises IdempotencyMismatchError when
        the key is live for ``method`` but was stored with a different body.
        """
        record = await self._live_record(idempotency_key, method)
        if record is None:
            return None

        if record.request_body_hash != self.compute_request_hash(request_body):
            logger.warning(
                "Idempotency key reused with a different body",
                extra={"idempotency_key": idempotency_key, "method": method},
            )
            raise IdempotencyMismatchError(idempotency_key, method)

        logger.info(
            "Replaying stored response",
            extra={"idempotency_key": idempotency_key, "method": method, "status_code": record.response_status_code},
        )
        return StoredResponse(record.response_status_code, json.loads(record.response_body), self._stored_headers(record))

    async def store_response(
        self,
        idempotency_key: str,
        method: str,
        request_body: dict[str, Any],
        status_code: int,
        response_body: dict[str, Any],
        response_headers: Optional[dict[str, str]] = None,
    ) -> None:
        """
        Persist the outcome of a completed call.

        The first writer wins: a record already stored under the key by a
        concurrent call is left as it is. An expired record under the same
        key is replaced.
        """
        now = _now()
        await self.db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.method == method,
                IdempotencyRecord.expires_at <= now,
            )
        )
        self.db.add(IdempotencyRecord(
            idempotency_key=idempotency_key,
            method=method,
            request_body_hash=self.compute_request_hash(request_body),
            response_status_code=status_code,
            response_body=_canonical_json(response_body),
            response_headers=_canonical_json(response_headers) if response_headers else None,
            expires_at=now + timedelta(hours=self.ttl_hours),
        ))

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Response already stored by a concurrent call",
                extra={"idempotency_key": idempotency_key, "method": method},
            )
            return

        logger.info(
            "Stored idempotent response",
            extra={"idempotency_key": idempotency_key, "method": method, "status_code": status_code},
        )

    async def cleanup_expired_records(self) -> int:
        """Delete every expired record and return how many went."""
        result = await self.db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= _now()))
        await self.db.commit()

        deleted = result.rowcount or 0
        if deleted:
            logger.info("Expired idempotency records removed", extra={"deleted_count": deleted})
        return deleted
