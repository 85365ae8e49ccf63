"""
Deploy Monitor - Webhook Ingestion API
======================================

Webhook receivers post the delivery records they produce; each record is
stored against its run and checked against the webhook alert rules.
"""

from typing import Any

from fastapi import APIRouter, status

from deploy_monitor.api.deps import Service
from deploy_monitor.core.schemas import WebhookRecord

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/records",
    status_code=status.HTTP_201_CREATED,
    summary="Record a webhook delivery",
)
async def record_webhook(record: WebhookRecord, service: Service) -> dict[str, Any]:
    alerts = await service.orchestrator.record_webhook(record)
    return {
        "webhookId": record.id,
        "alerts": [alert.to_record() for alert in alerts],
    }
