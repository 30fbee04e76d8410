from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from turnstile.metrics import metrics_registry
from turnstile.metrics.exporters import PROMETHEUS_CONTENT_TYPE, PrometheusExporter

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus scrape endpoint")
async def metrics() -> PlainTextResponse:
    payload = PrometheusExporter(metrics_registry).export()
    return PlainTextResponse(payload, media_type=PROMETHEUS_CONTENT_TYPE)
