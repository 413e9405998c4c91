"""Background workers for the marketplace backend."""

from .base import BaseWorker
from .escrow_release_worker import EscrowAutoReleaseWorker
from .maintenance_worker import StoreMaintenanceWorker
from .manager import WorkerManager
from .recurring_booking_worker import RecurringBookingWorker

__all__ = [
    "BaseWorker",
    "EscrowAutoReleaseWorker",
    "RecurringBookingWorker",
    "StoreMaintenanceWorker",
    "WorkerManager",
]
