"""FastAPI routers package."""

from .functions import router as functions_router
from .health import router as health_router
from .inventory import router as inventory_router
from .metrics import router as metrics_router
from .recurring import router as recurring_router
from .refunds import admin_router as admin_refunds_router
from .refunds import router as refunds_router
from .shipping import router as shipping_router

__all__ = [
    "admin_refunds_router",
    "functions_router",
    "health_router",
    "inventory_router",
    "metrics_router",
    "recurring_router",
    "refunds_router",
    "shipping_router",
]
