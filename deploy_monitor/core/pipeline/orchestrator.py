"""
Pipeline Orchestrator - run state machine and side-effect hub.

Owns the active-run cache. Storage is the source of truth: every mutation
is applied to a copy, persisted, and only then swapped into the cache, so
a failed write never leaves memory ahead of disk.

State machine: running -> completed | failed | timeout. Nothing leaves a
terminal state.
"""

import asyncio
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional, Union

import structlog

from deploy_monitor.core.background import BackgroundTasks
from deploy_monitor.core.clock import Clock, elapsed_ms, utc_now
from deploy_monitor.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from deploy_monitor.core.ids import RunIdGenerator
from deploy_monitor.core.models import RunStatus, StageStatus
from deploy_monitor.core.nerve_center.events import EventType
from deploy_monitor.core.scheduler import JobScheduler
from deploy_monitor.core.schemas import (
    Alert,
    ErrorRecord,
    PerformanceMetrics,
    PipelineRun,
    PipelineStage,
    RunReport,
    RunSummary,
    StageSummary,
    TriggerEvent,
    WebhookRecord,
    validate_input,
)
from deploy_monitor.core.storage import PersistenceStore

if TYPE_CHECKING:
    from deploy_monitor.core.alerts.manager import AlertManager
    from deploy_monitor.core.analytics.engine import AnalyticsEngine
    from deploy_monitor.core.nerve_center.websocket_hub import SubscriptionBroadcaster

logger = structlog.get_logger()

TIMEOUT_SWEEP_JOB = "timeout_sweep"
RETENTION_JOB = "retention_cleanup"
SYSTEM_STAGE = "system"


class PipelineOrchestrator:
    """
    Tracks pipeline runs end to end.

    Mutations of one run are serialised by a per-run lock; unrelated runs
    progress in parallel. Alert evaluation and analytics run inline after a
    successful write; broadcasts are fire-and-forget.
    """

    def __init__(
        self,
        store: PersistenceStore,
        alert_manager: Optional["AlertManager"] = None,
        analytics: Optional["AnalyticsEngine"] = None,
        broadcaster: Optional["SubscriptionBroadcaster"] = None,
        *,
        run_timeout_seconds: float = 300.0,
        monitoring_interval_seconds: float = 30.0,
        retention_count: int = 1000,
        cleanup_interval_seconds: float = 86400.0,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.alert_manager = alert_manager
        self.analytics = analytics
        self.broadcaster = broadcaster
        self.run_timeout = timedelta(seconds=run_timeout_seconds)
        self.monitoring_interval_seconds = monitoring_interval_seconds
        self.retention_count = retention_count
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock

        self._active: dict[str, PipelineRun] = {}
        self._last_activity: dict[str, datetime] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._ids = RunIdGenerator()
        self._timers = JobScheduler("orchestrator")
        self._broadcasts = BackgroundTasks("orchestrator-broadcast")
        self.is_monitoring = False

    # ==========================================================================
    # Monitoring Timers
    # ==========================================================================

    async def start_monitoring(self) -> None:
        """Start the timeout sweep and retention cleanup timers."""
        if self.is_monitoring:
            return
        self._timers.schedule(
            TIMEOUT_SWEEP_JOB,
            self.sweep_timeouts,
            interval_seconds=self.monitoring_interval_seconds,
        )
        self._timers.schedule(
            RETENTION_JOB,
            self.perform_maintenance,
            interval_seconds=self.cleanup_interval_seconds,
        )
        self.is_monitoring = True
        logger.info(
            "Monitoring started",
            interval_seconds=self.monitoring_interval_seconds,
            run_timeout_seconds=self.run_timeout.total_seconds(),
        )

    async def stop_monitoring(self) -> None:
        await self._timers.cancel_all()
        if self.is_monitoring:
            logger.info("Monitoring stopped")
        self.is_monitoring = False

    async def drain(self) -> None:
        """Wait for pending broadcasts."""
        await self._broadcasts.drain()

    # ==========================================================================
    # Active Set
    # ==========================================================================

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = self._locks[run_id] = asyncio.Lock()
        return lock

    async def _load_active(self, run_id: str) -> PipelineRun:
        """
        Active run by id, loading it from storage after a restart.

        Raises:
            NotFoundError: run unknown to memory and storage
            InvalidTransitionError: run already finished
        """
        run = self._active.get(run_id)
        if run is not None:
            return run

        run = await self.store.get_run(run_id)
        if run is None or run.status.is_terminal:
            # Locks exist only for runs that can still change
            self._locks.pop(run_id, None)
        if run is None:
            raise NotFoundError("pipeline run", run_id)
        if run.status.is_terminal:
            raise InvalidTransitionError(f"Pipeline run {run_id} is already {run.status.value}")

        self._active[run_id] = run
        self._last_activity[run_id] = self.clock()
        logger.info("Recovered active run from storage", run_id=run_id, stages=len(run.stages))
        return run

    async def _commit(self, run: PipelineRun, metrics: Optional[Mapping[str, Any]] = None) -> None:
        """Persist, then publish to the cache. Storage errors propagate."""
        await self.store.save_run(run, metrics=metrics)
        if run.status.is_terminal:
            self._active.pop(run.id, None)
            self._last_activity.pop(run.id, None)
            self._locks.pop(run.id, None)
        else:
            self._active[run.id] = run
            self._last_activity[run.id] = self.clock()

    # ==========================================================================
    # Operations
    # ==========================================================================

    async def create_run(self, trigger: Union[TriggerEvent, Mapping[str, Any]]) -> str:
        """
        Open a new run for an accepted trigger.

        Args:
            trigger: TriggerEvent or its record form

        Returns:
            The new run id

        Raises:
            ValidationError: malformed trigger
        """
        trigger = validate_input(TriggerEvent, trigger, "trigger event")
        now = self.clock()
        run = PipelineRun(
            id=self._ids.next_id(now),
            trigger=trigger,
            status=RunStatus.RUNNING,
            start_time=now,
        )

        await self._commit(run)

        logger.info(
            "Pipeline run created",
            run_id=run.id,
            trigger_type=trigger.type.value,
            source=trigger.source,
        )
        self._broadcast(EventType.PIPELINE_STARTED, run.to_record())
        return run.id

    async def update_stage(
        self,
        run_id: str,
        stage_name: str,
        status: Union[StageStatus, str],
        data: Optional[Mapping[str, Any]] = None,
    ) -> PipelineRun:
        """
        Apply a stage status update, creating the stage on first mention.

        Args:
            run_id: Active run
            stage_name: Stage to update
            status: New stage status
            data: Merged into the stage's data

        Returns:
            The updated run
        """
        if not isinstance(stage_name, str) or not stage_name.strip():
            raise ValidationError("Invalid stage update", errors=["stageName: must be a non-empty string"])
        try:
            status = StageStatus(status)
        except ValueError as e:
            raise ValidationError("Invalid stage update", errors=[f"status: {e}"]) from e
        if data is not None and not isinstance(data, Mapping):
            raise ValidationError("Invalid stage update", errors=["data: must be a mapping"])

        async with self._lock_for(run_id):
            run = (await self._load_active(run_id)).model_copy(deep=True)
            now = self.clock()

            stage = run.get_stage(stage_name)
            if stage is None:
                stage = PipelineStage(name=stage_name)
                run.stages.append(stage)

            previous = stage.status
            if status is StageStatus.RUNNING:
                if stage.start_time is None or previous.is_terminal:
                    # New attempt
                    stage.start_time = now
                    stage.end_time = None
                    stage.duration = None
            elif status.is_terminal:
                stage.end_time = now
                if stage.start_time is not None:
                    stage.duration = elapsed_ms(stage.start_time, now)

            stage.status = status
            if data:
                stage.data.update(data)

            await self._commit(run)

        logger.info(
            "Stage updated",
            run_id=run_id,
            stage=stage_name,
            previous=previous.value,
            status=status.value,
            duration_ms=stage.duration,
        )

        await self._evaluate_alerts(run)
        self._broadcast(EventType.PIPELINE_UPDATED, {
            "runId": run_id,
            "stage": stage.to_record(),
            "run": run.summary(),
        })
        return run

    async def add_error(
        self,
        run_id: str,
        stage: str,
        error_type: str,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ErrorRecord:
        """Append an error record to an active run."""
        error = validate_input(ErrorRecord, {
            "stage": stage,
            "type": error_type,
            "message": message,
            "timestamp": self.clock(),
            "context": dict(context or {}),
        }, "error record")

        async with self._lock_for(run_id):
            run =(await self._load_active(run_id)).model_copy(deep=True)
            run.errors.append(error)
            target = run.get_stage(error.stage)
            if target is not None:
                target.errors.append(error.message)

            await self._commit(run)

        logger.warning("Pipeline error recorded", run_id=run_id, stage=error.stage, error_type=error.type)
        self._broadcast(EventType.PIPELINE_UPDATED, {
            "runId": run_id,
            "error": error.to_record(),
            "run": run.summary(),
        })
        return error

    async def complete_run(
        self,
        run_id: str,
        success: bool,
        metrics: Optional[Union[PerformanceMetrics, Mapping[str, Any]]] = None,
    ) -> PipelineRun:
        """
        Finish a run.

        A run that still has a failed stage finishes unsuccessfully whatever
        ``success`` says.

        Returns:
            The finished run
        """
        if not isinstance(success, bool):
            raise ValidationError("Invalid completion", errors=["success: must be a boolean"])
        reported = self._validate_metrics(metrics)

        async with self._lock_for(run_id):
            run = (await self._load_active(run_id)).model_copy(deep=True)
            if success and run.failed_stages:
                logger.warning(
                    "Completion reported success with failed stages",
                    run_id=run_id,
                    failed_stages=[stage.name for stage in run.failed_stages],
                )
                success = False

            status = RunStatus.COMPLETED if success else RunStatus.FAILED
            run = self._finalize(run, status, success, reported)
            await self._commit(run, metrics=run.metrics.to_record())

        logger.info(
            "Pipeline run completed",
            run_id=run_id,
            status=run.status.value,
            duration_ms=run.duration,
            errors=len(run.errors),
        )
        await self._after_completion(run)
        return run

    @staticmethod
    def _validate_metrics(
        metrics: Optional[Union[PerformanceMetrics, Mapping[str, Any]]],
    ) -> PerformanceMetrics:
        if metrics is None:
            return PerformanceMetrics()
        if isinstance(metrics, PerformanceMetrics):
            return metrics.model_copy(deep=True)
        if not isinstance(metrics, Mapping):
            raise ValidationError("Invalid metrics", errors=["metrics: must be a mapping"])
        return validate_input(PerformanceMetrics, metrics, "metrics")

    def _finalize(
        self,
        run: PipelineRun,
        status: RunStatus,
        success: bool,
        metrics: PerformanceMetrics,
    ) -> PipelineRun:
        now = self.clock()
        run.status = status
        run.success = success
        run.end_time = now
        run.duration = elapsed_ms(run.start_time, now)

        metrics.total_pipeline_time = run.duration
        if status is RunStatus.TIMEOUT:
            metrics.error_rate = 100.0
            metrics.success_rate = 0.0
        elif run.stages:
            error_rate = min(100.0, round(len(run.errors) / len(run.stages) * 100, 2))
            metrics.error_rate = error_rate
            metrics.success_rate = round(100 - error_rate, 2)
        run.metrics = metrics
        return run

    async def _after_completion(self, run: PipelineRun) -> None:
        """Alerts, analytics and broadcasts for a finished run. Never raises."""
        alerts = await self._evaluate_alerts(run)

        if self.analytics is not None:
            try:
                snapshot = await self.analytics.update_after_run(run)
                self._broadcast(EventType.METRICS_UPDATED, snapshot.aggregates())
            except Exception as e:
                logger.error("Analytics update failed", run_id=run.id, error=str(e))

        self._broadcast(EventType.PIPELINE_COMPLETED, {
            **run.to_record(),
            "alerts": [alert.signature for alert in alerts],
        })

    async def _evaluate_alerts(self, run: PipelineRun) -> list[Alert]:
        if self.alert_manager is None:
            return []
        try:
            return await self.alert_manager.check_alerts(run)
        except Exception as e:
            logger.error("Alert evaluation failed", run_id=run.id, error=str(e))
            return []

    # ==========================================================================
    # Timeouts and Maintenance
    # ==========================================================================

    async def sweep_timeouts(self) -> list[str]:
        """
        Expire active runs with no activity for longer than the run timeout.

        Returns:
            Ids of runs moved to ``timeout``
        """
        now = self.clock()
        stale = [
            run_id
            for run_id, last_activity in list(self._last_activity.items())
            if now - last_activity > self.run_timeout
        ]

        expired = []
        for run_id in stale:
            try:
                run = await self._expire(run_id)
            except (NotFoundError, InvalidTransitionError):
                continue
            if run is not None:
                expired.append(run_id)
        return expired

    async def _expire(self, run_id: str) -> Optional[PipelineRun]:
        async with self._lock_for(run_id):
            last_activity = self._last_activity.get(run_id)
            if run_id not in self._active or last_activity is None:
                return None
            now = self.clock()
            if now - last_activity <= self.run_timeout:
                return None

            run = self._active[run_id].model_copy(deep=True)
            run.errors.append(ErrorRecord(
                stage=SYSTEM_STAGE,
                type="timeout",
                message=f"Pipeline run exceeded {int(self.run_timeout.total_seconds())}s without a stage update",
                timestamp=now,
                context={"lastActivity": last_activity.isoformat()},
            ))
            run = self._finalize(run, RunStatus.TIMEOUT, False, PerformanceMetrics())
            await self._commit(run, metrics=run.metrics.to_record())

        logger.warning("Pipeline run timed out", run_id=run_id, duration_ms=run.duration)
        await self._after_completion(run)
        return run

    async def perform_maintenance(self) -> dict[str, int]:
        """Trim stored history to the retention limit."""
        removed = await self.store.cleanup(self.retention_count)
        logger.info("Maintenance completed", **removed)
        return removed

    # ==========================================================================
    # Webhooks
    # ==========================================================================

    async def record_webhook(self, record: Union[WebhookRecord, Mapping[str, Any]]) -> list[Alert]:
        """
        Persist a webhook record for a known run and evaluate webhook alerts.

        Returns:
            Alerts fired by the record
        """
        record = validate_input(WebhookRecord, record, "webhook record")
        if record.run_id not in self._active and await self.store.get_run(record.run_id) is None:
            raise NotFoundError("pipeline run", record.run_id)

        await self.store.save_webhook_record(record)
        logger.info(
            "Webhook recorded",
            webhook_id=record.id,
            run_id=record.run_id,
            status=record.response.status,
        )

        alerts: list[Alert] = []
        if self.alert_manager is not None:
            try:
                alerts = await self.alert_manager.check_webhook_alerts(record)
            except Exception as e:
                logger.error("Webhook alert evaluation failed", webhook_id=record.id, error=str(e))

        self._broadcast(EventType.WEBHOOK_RECORDED, record.to_record())
        return alerts

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get_run(self, run_id: str) -> PipelineRun:
        run = self._active.get(run_id)
        if run is not None:
            return run
        run = await self.store.get_run(run_id)
        if run is None:
            raise NotFoundError("pipeline run", run_id)
        return run

    def get_active_runs(self) -> list[PipelineRun]:
        return sorted(self._active.values(), key=lambda run: run.start_time, reverse=True)

    async def get_recent_runs(self, limit: int = 10) -> list[PipelineRun]:
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError("Invalid limit", errors=["limit: must be a positive integer"])
        return await self.store.list_runs(limit=limit)

    async def generate_report(self, run_id: str) -> RunReport:
        """Read-only projection of a run for report renderers."""
        run = await self.get_run(run_id)
        webhooks = await self.store.count_webhook_records(run_id)
        detailed = await self.store.get_metrics(run_id)

        return RunReport(
            run_id=run.id,
            summary=RunSummary(
                status=run.status,
                success=run.success,
                duration=run.duration,
                trigger_type=run.trigger.type,
                trigger_source=run.trigger.source,
                start_time=run.start_time,
                end_time=run.end_time,
            ),
            stages=[
                StageSummary(
                    name=stage.name,
                    status=stage.status,
                    duration=stage.duration,
                    errors=list(stage.errors),
                )
                for stage in run.stages
            ],
            errors=list(run.errors),
            webhooks=webhooks,
            metrics=run.metrics,
            detailed_metrics=detailed,
        )

    async def get_system_status(self) -> dict[str, Any]:
        """Status reply for dashboard ``get_status`` requests."""
        recent = await self.store.list_runs(limit=5)
        status: dict[str, Any] = {
            "generatedAt": self.clock().isoformat(),
            "monitoring": self.is_monitoring,
            "activeRuns": len(self._active),
            "activeRunIds": [run.id for run in self.get_active_runs()],
            "recentRuns": [run.summary() for run in recent],
        }
        if self.alert_manager is not None:
            status["alerts"] = self.alert_manager.get_metrics()
        return status

    async def get_recent_run_summaries(self, limit: int = 10) -> list[dict[str, Any]]:
        """Recent runs as records, for dashboard ``get_recent_runs`` requests."""
        return [run.to_record() for run in await self.get_recent_runs(limit)]

    # ==========================================================================
    # Broadcasts
    # ==========================================================================

    def _broadcast(self, event: EventType, payload: Any) -> None:
        if self.broadcaster is None:
            return
        self._broadcasts.spawn(self.broadcaster.broadcast(event.value, payload), label=event.value)
