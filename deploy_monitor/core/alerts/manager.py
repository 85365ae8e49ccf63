"""
Alert Manager - threshold rules, deduplication and alert lifecycle.

Every firing is reduced to a signature (type, severity and an identity
payload). The first firing of a signature creates an alert and notifies;
repeats inside the type's cooldown window only bump ``occurrences``; a
repeat after the window re-notifies and opens a new window.
"""

import asyncio
import hashlib
import json
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Union

import structlog

from deploy_monitor.core.alerts.config import (
    AlertSettings,
    SettingsPatch,
    apply_patch,
    normalize_notification_patch,
    patch_to_dict,
    resolve_alert_settings,
)
from deploy_monitor.core.alerts.cooldown import CooldownCache, CooldownEntry, FireDecision
from deploy_monitor.core.alerts.notifications import NotificationDispatcher, NotificationEvent
from deploy_monitor.core.clock import Clock, elapsed_ms, utc_now
from deploy_monitor.core.exceptions import NotFoundError
from deploy_monitor.core.models import AlertType, RunStatus, Severity
from deploy_monitor.core.schemas import Alert, PipelineRun, WebhookRecord, validate_input
from deploy_monitor.core.storage import PersistenceStore

logger = structlog.get_logger()


def alert_signature(alert_type: AlertType, severity: Severity, identity: Mapping[str, Any]) -> str:
    """Stable fingerprint of type, severity and identity payload."""
    canonical = json.dumps(
        {"type": alert_type.value, "severity": severity.value, "payload": identity},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def format_alert_message(alert_type: AlertType, payload: Mapping[str, Any]) -> str:
    run_id = payload.get("runId", "unknown")
    if alert_type is AlertType.PIPELINE_FAILURE:
        return f"Pipeline {run_id} failed: {payload.get('error', 'Unknown error')}"
    if alert_type is AlertType.SLOW_PIPELINE:
        return f"Pipeline {run_id} took {payload.get('duration')}ms (threshold {payload.get('threshold')}ms)"
    if alert_type is AlertType.STAGE_FAILURE:
        return f"Stage '{payload.get('stage')}' failed in pipeline {run_id}: {payload.get('error', 'Stage failed')}"
    if alert_type is AlertType.SLOW_BUILD:
        return f"Build stage of pipeline {run_id} took {payload.get('duration')}ms (threshold {payload.get('threshold')}ms)"
    if alert_type is AlertType.WEBHOOK_TIMEOUT:
        return f"Webhook {payload.get('webhookId')} took {payload.get('processingTime')}ms to process"
    if alert_type is AlertType.WEBHOOK_AUTH_FAILURE:
        return f"Webhook authentication failed for {payload.get('source')}: {payload.get('reason', 'unknown reason')}"
    if alert_type is AlertType.WEBHOOK_ERROR:
        return f"Webhook {payload.get('webhookId')} returned HTTP {payload.get('status')}"
    return alert_type.value


@dataclass
class AlertMetrics:
    """Counters since process start."""
    total_alerts: int = 0
    notified: int = 0
    suppressed: int = 0
    acknowledged: int = 0
    resolved: int = 0
    by_type: Counter = field(default_factory=Counter)
    by_severity: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalAlerts": self.total_alerts,
            "notified": self.notified,
            "suppressed": self.suppressed,
            "acknowledged": self.acknowledged,
            "resolved": self.resolved,
            "byType": dict(self.by_type),
            "bySeverity": dict(self.by_severity),
        }


class AlertManager:
    """
    Evaluates alert rules against runs and webhook records.

    Active alerts and the cooldown cache are held in memory and rebuilt
    from storage on ``initialize``; every mutation is persisted before it is
    applied to memory.
    """

    def __init__(
        self,
        store: PersistenceStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[Union[AlertSettings, Mapping[str, Any]]] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.clock = clock
        self.metrics = AlertMetrics()
        self.settings = resolve_alert_settings(explicit=settings)

        self._explicit = settings
        self._active: dict[str, Alert] = {}
        self._cooldowns = CooldownCache()
        # Serialises check -> persist -> record on the active set and cooldowns
        self._state_lock = asyncio.Lock()
        self._initialized = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def initialize(self) -> None:
        """Load persisted configuration and active alerts."""
        persisted = await self.store.load_alert_settings()
        self.settings = resolve_alert_settings(persisted=persisted, explicit=self._explicit)
        if persisted is None:
            await self.store.save_alert_settings(self.settings.to_document())
        self.dispatcher.configure(self.settings.notifications)

        self._active.clear()
        self._cooldowns.clear()
        for alert in await self.store.list_alerts(active=True):
            self._active[alert.signature] = alert
            self._cooldowns.record(alert.signature, CooldownEntry(alert.last_notified_at, alert.occurrences))
        self._initialized = True

        logger.info(
            "alert_manager_initialized",
            active_alerts=len(self._active),
            channel_errors=list(self.dispatcher.configuration_errors),
        )

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def drain(self) -> None:
        """Wait for queued notifications to be delivered."""
        await self.dispatcher.drain()

    # ==========================================================================
    # Rule Evaluation
    # ==========================================================================

    async def check_alerts(self, run: PipelineRun) -> list[Alert]:
        """
        Evaluate pipeline-run rules.

        Returns:
            Every alert that matched, including ones deduplicated into an
            existing alert inside its cooldown window
        """
        await self._ensure_initialized()
        thresholds = self.settings.thresholds
        fired: list[Optional[Alert]] = []

        if run.status is RunStatus.FAILED:
            first_error = run.errors[0].message if run.errors else "Unknown error"
            fired.append(await self._fire(
                AlertType.PIPELINE_FAILURE,
                identity={"runId": run.id},
                details={
                    "trigger": run.trigger.type.value,
                    "error": first_error,
                    "duration": run.duration,
                    "errorCount": len(run.errors),
                },
            ))

        if run.duration is not None and run.duration > thresholds.response_time_ms:
            fired.append(await self._fire(
                AlertType.SLOW_PIPELINE,
                identity={"runId": run.id, "threshold": thresholds.response_time_ms},
                details={"duration": run.duration},
            ))

        for stage in run.failed_stages:
            fired.append(await self._fire(
                AlertType.STAGE_FAILURE,
                identity={"runId": run.id, "stage": stage.name},
                details={
                    "error": stage.errors[0] if stage.errors else "Stage failed",
                    "duration": stage.duration,
                },
            ))

        build = run.get_stage(thresholds.build_stage_name)
        if build is not None and build.duration is not None and build.duration > thresholds.build_time_ms:
            fired.append(await self._fire(
                AlertType.SLOW_BUILD,
                identity={"runId": run.id, "stage": build.name, "threshold": thresholds.build_time_ms},
                details={"duration": build.duration},
            ))

        return [alert for alert in fired if alert is not None]

    async def check_webhook_alerts(self, record: Union[WebhookRecord, Mapping[str, Any]]) -> list[Alert]:
        """Evaluate webhook rules, independently of the run rules."""
        await self._ensure_initialized()
        record = validate_input(WebhookRecord, record, "webhook record")
        thresholds = self.settings.thresholds
        base = {"webhookId": record.id, "runId": record.run_id}
        fired: list[Optional[Alert]] = []

        timing = record.timing
        if timing.processed is not None:
            processing_time = elapsed_ms(timing.sent, timing.processed)
            if processing_time > thresholds.webhook_timeout_ms:
                fired.append(await self._fire(
                    AlertType.WEBHOOK_TIMEOUT,
                    identity=base,
                    details={"processingTime": processing_time, "threshold": thresholds.webhook_timeout_ms},
                ))

        if not record.authentication.success:
            reason = record.authentication.errors[0] if record.authentication.errors else "authentication rejected"
            fired.append(await self._fire(
                AlertType.WEBHOOK_AUTH_FAILURE,
                identity={**base, "source": record.source},
                details={"method": record.authentication.method, "reason": reason},
            ))

        status = record.response.status
        if not 200 <= status < 300:
            fired.append(await self._fire(
                AlertType.WEBHOOK_ERROR,
                identity={**base, "status": status},
                details={"destination": record.destination},
            ))

        return [alert for alert in fired if alert is not None]

    async def _fire(
        self,
        alert_type: AlertType,
        identity: dict[str, Any],
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[Alert]:
        if not self.settings.is_enabled(alert_type):
            return None

        severity = self.settings.severity_for(alert_type)
        signature = alert_signature(alert_type, severity, identity)
        payload = {**identity, **(details or {})}

        async with self._state_lock:
            now = self.clock()
            decision, entry = self._cooldowns.check(signature, now, self.settings.cooldowns.window_for(alert_type))
            existing = self._active.get(signature)

            if decision is FireDecision.NEW or existing is None:
                alert = Alert(
                    signature=signature,
                    type=alert_type,
                    severity=severity,
                    message=format_alert_message(alert_type, payload),
                    occurrences=entry.occurrences,
                    first_seen=now,
                    last_seen=now,
                    last_notified_at=entry.last_fired,
                    payload=payload,
                )
            else:
                alert = existing.model_copy(deep=True)
                alert.occurrences = entry.occurrences
                alert.last_seen = now
                alert.last_notified_at = entry.last_fired
                alert.payload = payload
                alert.message = format_alert_message(alert_type, payload)

            await self.store.save_alert(alert, active=True)
            self._cooldowns.record(signature, entry)
            self._active[signature] = alert

            self.metrics.by_type[alert_type.value] += 1
            self.metrics.by_severity[severity.value] += 1
            if decision is FireDecision.NEW:
                self.metrics.total_alerts += 1

        if decision.notifies:
            self.metrics.notified += 1
            self.dispatcher.dispatch(NotificationEvent.ALERT_GENERATED, alert.model_copy(deep=True))
            logger.warning(
                "alert_fired",
                alert_type=alert_type.value,
                severity=severity.value,
                signature=signature[:12],
                refired=decision is FireDecision.REFIRED,
                occurrences=alert.occurrences,
            )
        else:
            self.metrics.suppressed += 1
            logger.debug(
                "alert_suppressed",
                alert_type=alert_type.value,
                signature=signature[:12],
                occurrences=alert.occurrences,
            )
        return alert

    # ==========================================================================
    # Acknowledge / Resolve
    # ==========================================================================

    def _get_active(self, signature: str) -> Alert:
        alert = self._active.get(signature)
        if alert is None:
            raise NotFoundError("alert", signature)
        return alert

    async def acknowledge_alert(
        self,
        signature: str,
        actor: str = "system",
        note: Optional[str] = None,
    ) -> Alert:
        """Mark an active alert acknowledged and notify lifecycle channels."""
        await self._ensure_initialized()
        async with self._state_lock:
            current = self._get_active(signature)
            if current.acknowledged:
                return current

            alert = current.model_copy(deep=True)
            alert.acknowledged = True
            alert.acknowledged_at = self.clock()
            alert.acknowledged_by = actor
            alert.acknowledgement_note = note

            await self.store.save_alert(alert, active=True)
            self._active[signature] = alert
            self.metrics.acknowledged += 1

        self.dispatcher.dispatch(NotificationEvent.ALERT_ACKNOWLEDGED, alert.model_copy(deep=True))
        logger.info("alert_acknowledged", signature=signature[:12], actor=actor)
        return alert

    async def resolve_alert(
        self,
        signature: str,
        actor: str = "system",
        note: Optional[str] = None,
    ) -> Alert:
        """
        Resolve an active alert.

        The alert leaves the active set and its cooldown entry is dropped,
        so the next firing of the signature starts a fresh alert. The stored
        row stays for audit.
        """
        await self._ensure_initialized()
        async with self._state_lock:
            alert = self._get_active(signature).model_copy(deep=True)
            alert.resolved = True
            alert.resolved_at = self.clock()
            alert.resolved_by = actor
            alert.resolution_note = note

            await self.store.save_alert(alert, active=False)
            del self._active[signature]
            self._cooldowns.forget(signature)
            self.metrics.resolved += 1

        self.dispatcher.dispatch(NotificationEvent.ALERT_RESOLVED, alert.model_copy(deep=True))
        logger.info("alert_resolved", signature=signature[:12], actor=actor)
        return alert

    # ==========================================================================
    # Queries
    # ==========================================================================

    def get_active_alerts(self) -> list[Alert]:
        return sorted(self._active.values(), key=lambda alert: alert.last_seen, reverse=True)

    def get_active_alert(self, signature: str) -> Optional[Alert]:
        return self._active.get(signature)

    async def get_alert_history(self, limit: Optional[int] = 100) -> list[Alert]:
        return await self.store.list_alerts(limit=limit)

    def get_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics.to_dict(),
            "activeAlerts": len(self._active),
            "channels": self.dispatcher.get_channel_status(),
        }

    async def clear_alert_history(self, older_than: timedelta) -> int:
        """Delete resolved alert rows last seen more than ``older_than`` ago."""
        removed = await self.store.delete_alerts(self.clock() - older_than)
        if removed:
            logger.info("alert_history_cleared", removed=removed)
        return removed

    # ==========================================================================
    # Configuration
    # ==========================================================================

    def export_config(self) -> dict[str, Any]:
        return self.settings.to_document()

    async def _apply(self, patch: dict[str, Any]) -> AlertSettings:
        await self._ensure_initialized()
        updated = apply_patch(self.settings, patch)
        await self.store.save_alert_settings(updated.to_document())
        self.settings = updated
        self.dispatcher.configure(updated.notifications)
        logger.info("alert_config_updated", sections=sorted(patch))
        return updated

    async def update_thresholds(self, patch: SettingsPatch) -> AlertSettings:
        return await self._apply({"thresholds": patch_to_dict(patch)})

    async def update_cooldowns(self, patch: SettingsPatch) -> AlertSettings:
        return await self._apply({"cooldowns": patch_to_dict(patch)})

    async def update_notification_settings(self, patch: SettingsPatch) -> AlertSettings:
        return await self._apply({"notifications": normalize_notification_patch(patch_to_dict(patch))})

    async def update_alert_types(self, patch: SettingsPatch) -> AlertSettings:
        return await self._apply({"alert_types": patch_to_dict(patch)})

    def cooldown_remaining(self, signature: str) -> Optional[timedelta]:
        """Time left in the signature's current cooldown window, if any."""
        alert = self._active.get(signature)
        entry = self._cooldowns.get(signature)
        if alert is None or entry is None:
            return None
        window = self.settings.cooldowns.window_for(alert.type)
        remaining = entry.last_fired + window - self.clock()
        return remaining if remaining > timedelta(0) else timedelta(0)
