"""
Deploy Monitor - Analytics API
==============================
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, status

from deploy_monitor.api.deps import Service
from deploy_monitor.core.service import ANALYTICS_REPORT_JOB

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.get("/current", summary="Current analytics aggregate")
async def current_aggregates(service: Service) -> dict[str, Any]:
    aggregates = await service.analytics.get_current_aggregates()
    if aggregates is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "No analytics computed yet")
    return aggregates


@router.get("/snapshots", summary="Snapshot history, oldest first")
async def snapshots(
    service: Service,
    limit: Optional[int] = Query(default=None, ge=1),
) -> list[dict[str, Any]]:
    return await service.analytics.get_snapshots(limit)


@router.post("/refresh", summary="Recompute the analytics snapshot now")
async def refresh(service: Service) -> dict[str, Any]:
    return await service.scheduler.run_now(ANALYTICS_REPORT_JOB)
