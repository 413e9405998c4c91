"""Metrics endpoint for Prometheus scraping."""

from fastapi import APIRouter, Request, Response

from ..core.observability import MetricsCollector, get_prometheus_metrics

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Endpoint for Prometheus to scrape metrics",
    response_class=Response,
    tags=["Observability"]
)
async def metrics(request: Request):
    """
    Return Prometheus metrics.

    The memory cache gauge is refreshed at scrape time.
    """
    cache = getattr(request.app.state, "cache", None)
    if cache is not None:
        MetricsCollector.set_cache_memory_entries(cache.stats()["memory_entries"])

    return Response(
        content=get_prometheus_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8"
    )
