"""Prometheus scrape endpoint for the in-process counters (webhooks, gateway, charges)."""
from fastapi import APIRouter, Response

from mywallet.core.metrics import METRICS


router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


@router.get("/metrics")
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
