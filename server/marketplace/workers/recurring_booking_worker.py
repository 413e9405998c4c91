"""Background worker that books the next occurrence of recurring series."""

import logging
from datetime import datetime, timezone

from ..services.recurring_booking_service import RecurringBookingService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class RecurringBookingWorker(BaseWorker):
    def __init__(self, recurring: RecurringBookingService, interval_seconds: int = 3600):
        super().__init__(name="RecurringBookings", interval_seconds=interval_seconds)
        self.recurring = recurring

    async def process(self) -> None:
        today = datetime.now(timezone.utc).date()
        results = await self.recurring.materialize_due(today)

        created = sum(1 for result in results if result.booking_id)
        if results:
            logger.info(
                f"Advanced {len(results)} recurring series",
                extra={"series_count": len(results), "bookings_created": created, "worker": self.name},
            )
