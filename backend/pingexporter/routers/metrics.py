"""
Metrics endpoint
Text exposition of every resolved target's ping counters for Prometheus.
"""
from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from pingexporter.config import settings

router = APIRouter(tags=["Metrics"])


@router.get(settings.METRICS_PATH, response_class=Response)
async def metrics(request: Request):
    aggregator = request.app.state.aggregator
    return Response(content=aggregator.render(), media_type=CONTENT_TYPE_LATEST)
