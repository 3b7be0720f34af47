"""Speed test results and manual trigger endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import (
    get_current_principal,
    get_db,
    get_scheduler,
    get_speedtest_runner,
    require_roles,
)
from core.exceptions import StoreUnavailableError
from core.rbac import Role
from services.speedtest_service import ResultsService, SpeedtestRunner, SpeedtestScheduler

router = APIRouter(tags=["speedtest"])


@router.get("/status", response_model=dict[str, Any], dependencies=[Depends(get_current_principal)])
async def get_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    runner: SpeedtestRunner = Depends(get_speedtest_runner),
):
    """Latest result, 24h statistics and run counters."""
    service = ResultsService(db)
    try:
        latest = await service.latest()
        stats = await service.stats(hours=24)
    except SQLAlchemyError as e:
        raise StoreUnavailableError("Failed to get status") from e

    return {
        "latest": latest,
        "stats": stats,
        "uptime": round(request.app.state.metrics.snapshot().uptime_seconds, 3),
        "testCount": runner.run_count,
        "errorCount": runner.error_count,
    }


@router.get("/history", response_model=dict[str, Any], dependencies=[Depends(get_current_principal)])
async def get_history(
    hours: int = Query(24, ge=1, le=24 * 366),
    limit: int = Query(1000, ge=1, le=10000),
    db: AsyncSession = Depends(get_db),
):
    """Results from the last ``hours``, newest first, speeds in Mbps."""
    try:
        rows = await ResultsService(db).history(hours=hours, limit=limit)
    except SQLAlchemyError as e:
        raise StoreUnavailableError("Failed to get history") from e
    return {"data": rows, "count": len(rows)}


@router.post("/test/trigger", response_model=dict[str, Any], dependencies=[Depends(require_roles(Role.ADMIN))])
async def trigger_speed_test(scheduler: SpeedtestScheduler = Depends(get_scheduler)):
    """Start a measurement cycle in the background."""
    trigger_id = scheduler.trigger()
    return {"message": "Speed test triggered", "id": trigger_id}
