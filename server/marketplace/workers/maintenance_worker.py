"""Background worker that keeps the local store small."""

import logging

from ..cache import TwoTierCache
from ..core.database import async_session_factory
from ..services.idempotency_service import IdempotencyService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class StoreMaintenanceWorker(BaseWorker):
    """Purges expired cache entries and expired idempotency records."""

    def __init__(self, cache: TwoTierCache, idempotency_ttl_hours: int = 24, interval_seconds: int = 900):
        super().__init__(name="StoreMaintenance", interval_seconds=interval_seconds)
        self.cache = cache
        self.idempotency_ttl_hours = idempotency_ttl_hours

    async def process(self) -> None:
        purged = await self.cache.purge_expired()

        async with async_session_factory() as db:
            idempotency_service = IdempotencyService(db, ttl_hours=self.idempotency_ttl_hours)
            deleted = await idempotency_service.cleanup_expired_records()

        if purged or deleted:
            logger.info(
                "Local store maintenance removed expired rows",
                extra={"cache_entries": purged, "idempotency_records": deleted, "worker": self.name},
            )
