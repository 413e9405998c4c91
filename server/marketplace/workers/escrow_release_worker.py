"""Background worker that pays out escrow holds whose hold period has ended."""

import logging
from datetime import datetime, timezone

from ..services.escrow_service import EscrowService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class EscrowAutoReleaseWorker(BaseWorker):
    """
    Releases held payments past their expiry for completed bookings.

    Each release goes through the same path as a manual release, with
    trigger ``auto``; a hold that cannot be released is logged and retried
    on the next run.
    """

    def __init__(self, escrow: EscrowService, interval_seconds: int = 3600):
        super().__init__(name="EscrowAutoRelease", interval_seconds=interval_seconds)
        self.escrow = escrow

    async def process(self) -> None:
        now = datetime.now(timezone.utc)
        released = await self.escrow.release_due(now)

        if released > 0:
            logger.info(
                f"Auto-released {released} escrow holds",
                extra={"released_count": released, "timestamp": now.isoformat(), "worker": self.name},
            )
