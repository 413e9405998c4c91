"""ASGI entry point: application factory and process lifespan."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import models  # noqa: F401  registers local store tables on Base.metadata
from .backend import BackendClient
from .cache import CacheStore, TwoTierCache
from .core.config import settings
from .core.database import async_session_factory, close_db, engine, init_db
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    SERVICE_NAME,
    SERVICE_VERSION,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .routers import (
    admin_refunds_router,
    functions_router,
    health_router,
    inventory_router,
    metrics_router,
    recurring_router,
    refunds_router,
    shipping_router,
)
from .services.notification_service import EmailSender, NotificationService, SmsSender
from .services.payment_gateway import StripeGateway
from .workers import WorkerManager

setup_structured_logging()

# stdlib loggers of uvicorn, sqlalchemy and httpx
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)

logger = logging.getLogger(__name__)


def _wire_collaborators(app: FastAPI) -> None:
    """Create the long-lived collaborators the request dependencies read from ``app.state``."""
    backend = BackendClient.from_settings(settings)
    sms = SmsSender.from_settings(settings)
    email = EmailSender.from_settings(settings)
    if not sms.configured:
        logger.warning("SMS provider is not configured; text notifications are disabled")
    if not email.configured:
        logger.warning("Email provider is not configured; email notifications are disabled")

    app.state.backend = backend
    app.state.sms_sender = sms
    app.state.cache = TwoTierCache(
        CacheStore(async_session_factory),
        max_memory_entries=settings.cache_max_memory_entries,
        default_ttl=settings.cache_default_ttl_seconds,
    )
    app.state.payment_gateway = StripeGateway.from_settings(settings)
    app.state.notifier = NotificationService(backend, sms, email)
    app.state.workers = WorkerManager.from_services(
        backend, app.state.cache, app.state.payment_gateway, app.state.notifier
    )


async def _release_collaborators(app: FastAPI) -> None:
    await app.state.workers.stop_all()
    await app.state.sms_sender.close()
    await app.state.backend.close()
    await close_db()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start observability, the local store, collaborators and workers; undo it all on shutdown."""
    logger.info("Marketplace API starting", extra={"environment": settings.environment, "debug": settings.debug})

    setup_tracing()
    setup_metrics()
    instrument_sqlalchemy(engine)
    await init_db()
    _wire_collaborators(app)

    if settings.workers_enabled:
        await app.state.workers.start_all()
    else:
        logger.info("Background workers disabled by configuration")

    logger.info("Marketplace API ready")
    try:
        yield
    finally:
        logger.info("Marketplace API shutting down")
        try:
            await _release_collaborators(app)
        except Exception:
            logger.error("Cleanup failed during shutdown", exc_info=True)


def create_app() -> FastAPI:
    """Assemble the API: middleware, problem handlers and every router."""
    app = FastAPI(
        title="Marketplace Backend API",
        description="Server-side operations of the services marketplace: refunds, escrow payouts, "
        "notifications, receipts, shipping rates, inventory locking and recurring bookings",
        version=SERVICE_VERSION,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Idempotent-Replayed", "Retry-After"],
    )
    setup_middleware(app)
    instrument_fastapi(app)

    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    for router in (
        health_router,
        metrics_router,
        functions_router,
        recurring_router,
        inventory_router,
        refunds_router,
        admin_refunds_router,
        shipping_router,
    ):
        app.include_router(router)

    logger.info("Marketplace API configured", extra={"service": SERVICE_NAME})
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "marketplace.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
