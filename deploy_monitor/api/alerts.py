"""
Deploy Monitor - Alerts API
===========================

Active alerts, history, lifecycle actions and configuration patches.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Query

from deploy_monitor.api.deps import Service
from deploy_monitor.core.schemas import AlertActionRequest

router = APIRouter(prefix="/alerts", tags=["Alerts"])


@router.get("", summary="Active alerts")
async def list_active_alerts(service: Service) -> list[dict[str, Any]]:
    return [alert.to_record() for alert in service.alert_manager.get_active_alerts()]


@router.get("/history", summary="Alert history, including resolved alerts")
async def alert_history(
    service: Service,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[dict[str, Any]]:
    return [alert.to_record() for alert in await service.alert_manager.get_alert_history(limit)]


@router.get("/metrics", summary="Alert counters and channel status")
async def alert_metrics(service: Service) -> dict[str, Any]:
    return service.alert_manager.get_metrics()


@router.post("/{signature}/acknowledge", summary="Acknowledge an alert")
async def acknowledge_alert(
    signature: str,
    service: Service,
    action: Optional[AlertActionRequest] = None,
) -> dict[str, Any]:
    action = action or AlertActionRequest()
    alert = await service.alert_manager.acknowledge_alert(signature, action.actor, action.note)
    return alert.to_record()


@router.post("/{signature}/resolve", summary="Resolve an alert")
async def resolve_alert(
    signature: str,
    service: Service,
    action: Optional[AlertActionRequest] = None,
) -> dict[str, Any]:
    action = action or AlertActionRequest()
    alert = await service.alert_manager.resolve_alert(signature, action.actor, action.note)
    return alert.to_record()


# ==========================================================================
# Configuration
# ==========================================================================

@router.get("/config", summary="Effective alert configuration")
async def get_config(service: Service) -> dict[str, Any]:
    return service.alert_manager.export_config()


@router.patch("/config/thresholds", summary="Update alert thresholds")
async def update_thresholds(service: Service, patch: dict[str, Any] = Body(...)) -> dict[str, Any]:
    settings = await service.alert_manager.update_thresholds(patch)
    return settings.to_document()


@router.patch("/config/cooldowns", summary="Update cooldown windows")
async def update_cooldowns(service: Service, patch: dict[str, Any] = Body(...)) -> dict[str, Any]:
    settings = await service.alert_manager.update_cooldowns(patch)
    return settings.to_document()


@router.patch("/config/notifications", summary="Update notification channels")
async def update_notifications(service: Service, patch: dict[str, Any] = Body(...)) -> dict[str, Any]:
    settings = await service.alert_manager.update_notification_settings(patch)
    return settings.to_document()
