"""
Deploy Monitor - Pipeline Runs API
==================================

Collaborator entry points for triggers, stage updates, errors and completion.
"""

from typing import Any

from fastapi import APIRouter, Query, status

from deploy_monitor.api.deps import Service
from deploy_monitor.core.schemas import (
    CompleteRunRequest,
    ErrorCreateRequest,
    RunCreatedResponse,
    StageUpdateRequest,
    TriggerEvent,
)

router = APIRouter(prefix="/runs", tags=["Pipeline Runs"])


@router.post(
    "",
    response_model=RunCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a run for a trigger",
)
async def create_run(trigger: TriggerEvent, service: Service) -> RunCreatedResponse:
    run_id = await service.orchestrator.create_run(trigger)
    return RunCreatedResponse(run_id=run_id)


@router.get("", summary="Most recent runs")
async def list_runs(
    service: Service,
    limit: int = Query(default=10, ge=1, le=500),
) -> list[dict[str, Any]]:
    return [run.to_record() for run in await service.orchestrator.get_recent_runs(limit)]


@router.get("/active", summary="Runs still in progress")
async def list_active_runs(service: Service) -> list[dict[str, Any]]:
    return [run.to_record() for run in service.orchestrator.get_active_runs()]


@router.get("/{run_id}", summary="Get a run")
async def get_run(run_id: str, service: Service) -> dict[str, Any]:
    run = await service.orchestrator.get_run(run_id)
    return run.to_record()


@router.post("/{run_id}/stages", summary="Apply a stage update")
async def update_stage(run_id: str, update: StageUpdateRequest, service: Service) -> dict[str, Any]:
    run = await service.orchestrator.update_stage(run_id, update.stage_name, update.status, update.data)
    return run.to_record()


@router.post(
    "/{run_id}/errors",
    status_code=status.HTTP_201_CREATED,
    summary="Record an error",
)
async def add_error(run_id: str, error: ErrorCreateRequest, service: Service) -> dict[str, Any]:
    record = await service.orchestrator.add_error(
        run_id,
        error.stage,
        error.type,
        error.message,
        error.context,
    )
    return record.to_record()


@router.post("/{run_id}/complete", summary="Finish a run")
async def complete_run(run_id: str, completion: CompleteRunRequest, service: Service) -> dict[str, Any]:
    run = await service.orchestrator.complete_run(run_id, completion.success, completion.metrics)
    return run.to_record()


@router.get("/{run_id}/report", summary="Run report data")
async def get_report(run_id: str, service: Service) -> dict[str, Any]:
    report = await service.orchestrator.generate_report(run_id)
    return report.to_record()
