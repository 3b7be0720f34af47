"""Prometheus scrape endpoint (public)."""

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from core.metrics import generate_metrics

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(request: Request) -> PlainTextResponse:
    """Prometheus scrape endpoint."""
    snapshot = request.app.state.metrics.snapshot()
    return PlainTextResponse(
        content=generate_metrics(snapshot),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
