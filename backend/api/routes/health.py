"""Health check endpoint (public, unversioned, for load balancers and probes)."""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from db import database

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=dict[str, Any])
async def health_check(request: Request):
    """
    Liveness with a database round trip.
    Returns 503 if the database cannot be reached.
    """
    try:
        await database.ping_db()
    except Exception as e:
        logger.error("Health check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": str(e) or type(e).__name__},
        )

    return {
        "status": "healthy",
        "uptime": round(request.app.state.metrics.snapshot().uptime_seconds, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": request.app.state.settings.APP_VERSION,
    }
