"""Tracing, Prometheus metrics and structlog configuration."""

import logging

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .config import settings

SERVICE_NAME = "marketplace-backend"
SERVICE_VERSION = "1.0.0"

REGISTRY = CollectorRegistry()
NAMESPACE = "marketplace"

HTTP_REQUESTS = Counter(
    "http_requests_total", "Served HTTP requests",
    ["method", "endpoint", "status_code"], namespace=NAMESPACE, registry=REGISTRY,
)
HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds", "Time to serve an HTTP request",
    ["method", "endpoint"], namespace=NAMESPACE, registry=REGISTRY,
)

# Upstreams and the cache
BACKEND_REQUEST_DURATION = Histogram(
    "backend_request_duration_seconds", "Backend platform call duration",
    ["operation", "outcome"], namespace=NAMESPACE, registry=REGISTRY,
)
CACHE_LOOKUPS = Counter(
    "cache_lookups_total", "Cache lookups by tier and result",
    ["tier", "result"], namespace=NAMESPACE, registry=REGISTRY,
)
CACHE_MEMORY_ENTRIES = Gauge(
    "cache_memory_entries", "Entries held in the memory cache tier",
    namespace=NAMESPACE, registry=REGISTRY,
)

# Money movement, notifications, shipping
REFUNDS_PROCESSED = Counter(
    "refunds_processed_total", "Refunds sent to the payment processor",
    ["outcome"], namespace=NAMESPACE, registry=REGISTRY,
)
ESCROW_RELEASED = Counter(
    "escrow_releases_total", "Escrow holds released to providers",
    ["trigger"], namespace=NAMESPACE, registry=REGISTRY,
)
NOTIFICATIONS_SENT = Counter(
    "notifications_sent_total", "Outbound notifications by channel and outcome",
    ["channel", "outcome"], namespace=NAMESPACE, registry=REGISTRY,
)
SHIPPING_QUOTES = Counter(
    "shipping_quotes_total", "Shipping rate quote requests",
    ["source"], namespace=NAMESPACE, registry=REGISTRY,
)

WORKER_ITERATIONS = Histogram(
    "worker_iteration_duration_seconds", "Background worker pass duration by outcome",
    ["worker", "outcome"], namespace=NAMESPACE, registry=REGISTRY,
)


def current_trace_ids() -> dict[str, str]:
    """Trace and span id of the active span, empty outside a recorded span."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return {}
    return {"trace_id": format(context.trace_id, "032x"), "span_id": format(context.span_id, "016x")}


def _with_trace_ids(logger, method_name, event_dict):
    event_dict.update(current_trace_ids())
    return event_dict


def setup_structured_logging():
    """JSON log lines in deployed environments, console rendering in development."""
    renderer = structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _with_trace_ids,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.log_level)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing, exporting over OTLP when an endpoint is configured."""
    provider = TracerProvider(resource=_resource())
    if settings.otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return trace.get_tracer(__name__)


def setup_metrics():
    """Install an OTLP meter provider when an endpoint is configured."""
    if settings.otlp_endpoint:
        reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=settings.otlp_endpoint),
            export_interval_millis=60000,
        )
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))
    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """One server span per request."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine=None):
    """Spans for local store queries, scoped to ``engine`` when given."""
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    else:
        SQLAlchemyInstrumentor().instrument()


class MetricsCollector:
    """Collector for request, upstream and business metrics."""

    @staticmethod
    def record_http_request(method: str, endpoint: str, status_code: int, duration: float):
        """Record a served HTTP request."""
        HTTP_REQUESTS.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration)

    @staticmethod
    def record_backend_request(operation: str, outcome: str, duration: float):
        """Record a call to the backend platform."""
        BACKEND_REQUEST_DURATION.labels(operation=operation, outcome=outcome).observe(duration)

    @staticmethod
    def record_cache_lookup(tier: str, result: str):
        """Record a cache hit or miss on one tier."""
        CACHE_LOOKUPS.labels(tier=tier, result=result).inc()

    @staticmethod
    def set_cache_memory_entries(count: int):
        """Set the size of the memory cache tier."""
        CACHE_MEMORY_ENTRIES.set(count)

    @staticmethod
    def record_refund_processed(outcome: str):
        """Record a refund attempt with the processor."""
        REFUNDS_PROCESSED.labels(outcome=outcome).inc()

    @staticmethod
    def record_escrow_released(trigger: str):
        """Record an escrow release (manual or auto)."""
        ESCROW_RELEASED.labels(trigger=trigger).inc()

    @staticmethod
    def record_notification(channel: str, outcome: str):
        """Record an outbound SMS or email."""
        NOTIFICATIONS_SENT.labels(channel=channel, outcome=outcome).inc()

    @staticmethod
    def record_shipping_quote(source: str):
        """Record a shipping quote served from cache or computed."""
        SHIPPING_QUOTES.labels(source=source).inc()

    @staticmethod
    def record_worker_iteration(worker: str, outcome: str, duration: float):
        """Record one pass of a background worker."""
        WORKER_ITERATIONS.labels(worker=worker, outcome=outcome).observe(duration)


def get_prometheus_metrics():
    """Exposition text of the service registry."""
    return generate_latest(REGISTRY)

