"""Worker manager for coordinating background tasks."""

import asyncio
import logging
from typing import Dict, Optional

from ..backend import Backend
from ..cache import TwoTierCache
from ..core.config import settings
from ..services.escrow_service import EscrowService
from ..services.fee_service import FeeService
from ..services.notification_service import NotificationService
from ..services.payment_gateway import PaymentGateway
from ..services.recurring_booking_service import RecurringBookingService
from .base import BaseWorker
from .escrow_release_worker import EscrowAutoReleaseWorker
from .maintenance_worker import StoreMaintenanceWorker
from .recurring_booking_worker import RecurringBookingWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """Named background workers, started and stopped together with the app."""

    def __init__(self, workers: Optional[Dict[str, BaseWorker]] = None):
        self.workers: Dict[str, BaseWorker] = dict(workers or {})

    @classmethod
    def from_services(
        cls,
        backend: Backend,
        cache: TwoTierCache,
        gateway: PaymentGateway,
        notifier: NotificationService,
    ) -> "WorkerManager":
        """The standard worker set, configured from settings."""
        fees = FeeService(backend, default_percentage=settings.platform_fee_percentage)
        escrow = EscrowService(backend, gateway, fees, notifier, hold_days=settings.escrow_hold_days)

        return cls({
            "escrow_auto_release": EscrowAutoReleaseWorker(
                escrow, interval_seconds=settings.escrow_release_interval_seconds
            ),
            "store_maintenance": StoreMaintenanceWorker(
                cache,
                idempotency_ttl_hours=settings.idempotency_ttl_hours,
                interval_seconds=settings.maintenance_interval_seconds,
            ),
            "recurring_bookings": RecurringBookingWorker(
                RecurringBookingService(backend),
                interval_seconds=settings.recurring_booking_interval_seconds,
            ),
        })

    async def start_all(self) -> None:
        """Start every worker; one that fails to start does not block the rest."""
        for name, worker in self.workers.items():
            try:
                await worker.start()
            except Exception:
                logger.error("Worker failed to start", extra={"worker": name}, exc_info=True)
        logger.info("Workers started", extra={"workers": sorted(self.get_worker_status())})

    async def stop_all(self) -> None:
        """Cancel the running workers concurrently."""
        running = {name: worker for name, worker in self.workers.items() if worker.running}
        results = await asyncio.gather(*(worker.stop() for worker in running.values()), return_exceptions=True)

        for name, result in zip(running, results):
            if isinstance(result, Exception):
                logger.error("Worker failed to stop cleanly", extra={"worker": name, "error": str(result)})

    def get_worker(self, name: str) -> BaseWorker:
        """Raises KeyError for an unknown name."""
        return self.workers[name]

    def get_worker_status(self) -> Dict[str, bool]:
        """Worker names mapped to whether they are running."""
        return {name: worker.running for name, worker in self.workers.items()}
