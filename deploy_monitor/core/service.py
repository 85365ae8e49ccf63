"""
Monitoring Service - explicit context wiring every component.

Startup order: storage, alert manager, orchestrator timers, scheduled jobs.
Shutdown stops every timer before releasing the storage handles.
"""

from datetime import timedelta
from typing import Any, Optional

import structlog

from deploy_monitor.core.alerts.manager import AlertManager
from deploy_monitor.core.alerts.notifications import NotificationDispatcher
from deploy_monitor.core.analytics.engine import AnalyticsEngine
from deploy_monitor.core.clock import Clock, utc_now
from deploy_monitor.core.config import Settings, get_settings
from deploy_monitor.core.nerve_center.events import EventType
from deploy_monitor.core.nerve_center.websocket_hub import SubscriptionBroadcaster
from deploy_monitor.core.pipeline.orchestrator import PipelineOrchestrator
from deploy_monitor.core.scheduler import JobScheduler
from deploy_monitor.core.storage import PersistenceStore

logger = structlog.get_logger()

ANALYTICS_REPORT_JOB = "analytics_report"
ALERT_HISTORY_JOB = "alert_history_cleanup"


class MonitoringService:
    """Owns one instance of each monitoring component."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[PersistenceStore] = None,
        broadcaster: Optional[SubscriptionBroadcaster] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or get_settings()
        config = self.settings

        self.store = store or PersistenceStore(
            config.DATABASE_URL,
            echo=config.DATABASE_ECHO,
            pool_size=config.DATABASE_POOL_SIZE,
            max_overflow=config.DATABASE_MAX_OVERFLOW,
        )
        self.broadcaster = broadcaster or SubscriptionBroadcaster()
        self.dispatcher = dispatcher or NotificationDispatcher(broadcaster=self.broadcaster)
        self.alert_manager = AlertManager(
            self.store,
            self.dispatcher,
            settings={"notifications": config.alert_notification_overrides()},
            clock=clock,
        )
        self.analytics = AnalyticsEngine(
            self.store,
            snapshot_retention=config.ANALYTICS_SNAPSHOT_RETENTION,
            std_dev_threshold=config.ANALYTICS_STD_DEV_THRESHOLD,
            ratio_multiplier=config.ANALYTICS_RATIO_MULTIPLIER,
            clock=clock,
        )
        self.orchestrator = PipelineOrchestrator(
            self.store,
            self.alert_manager,
            self.analytics,
            self.broadcaster,
            run_timeout_seconds=config.PIPELINE_TIMEOUT_SECONDS,
            monitoring_interval_seconds=config.MONITORING_INTERVAL_SECONDS,
            retention_count=config.STORAGE_MAX_RECORDS,
            cleanup_interval_seconds=config.STORAGE_CLEANUP_INTERVAL_SECONDS,
            clock=clock,
        )
        self.broadcaster.status_provider = self.orchestrator.get_system_status
        self.broadcaster.recent_runs_provider = self.orchestrator.get_recent_run_summaries

        self.scheduler = JobScheduler("monitoring")
        self.started = False

    async def start(self) -> None:
        """
        Bring the engine up.

        A storage failure is fatal and propagates. Channel configuration
        errors only disable the affected channel.
        """
        if self.started:
            return

        await self.store.initialize()
        await self.alert_manager.initialize()

        if self.settings.MONITORING_AUTOSTART:
            await self.orchestrator.start_monitoring()

        self.scheduler.schedule(
            ANALYTICS_REPORT_JOB,
            self.generate_report,
            interval_seconds=self.settings.REPORT_INTERVAL_SECONDS,
        )
        self.scheduler.schedule(
            ALERT_HISTORY_JOB,
            self.cleanup_alert_history,
            interval_seconds=self.settings.ALERT_HISTORY_CLEANUP_INTERVAL_SECONDS,
        )

        self.started = True
        logger.info(
            "Monitoring service started",
            database=self.store.engine.url.render_as_string(hide_password=True),
            monitoring=self.orchestrator.is_monitoring,
            disabled_channels=list(self.dispatcher.configuration_errors),
        )

    async def stop(self) -> None:
        """Stop timers, flush background work, then close storage."""
        await self.scheduler.cancel_all()
        await self.orchestrator.stop_monitoring()

        await self.orchestrator.drain()
        await self.alert_manager.drain()
        await self.broadcaster.close()
        await self.store.close()

        self.started = False
        logger.info("Monitoring service stopped")

    async def generate_report(self) -> dict[str, Any]:
        """Periodic analytics snapshot, pushed to subscribed dashboards."""
        snapshot = await self.analytics.update_after_run()
        aggregates = snapshot.aggregates()
        await self.broadcaster.broadcast(EventType.ANALYTICS_UPDATED.value, aggregates)
        return aggregates

    async def cleanup_alert_history(self) -> int:
        return await self.alert_manager.clear_alert_history(
            timedelta(days=self.settings.ALERT_HISTORY_MAX_AGE_DAYS)
        )

    def status(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "monitoring": self.orchestrator.is_monitoring,
            "activeRuns": len(self.orchestrator.get_active_runs()),
            "jobs": [
                self.scheduler.get_job(name).to_dict()
                for name in self.scheduler.job_names
            ],
            "broadcaster": self.broadcaster.get_stats(),
            "channels": self.dispatcher.get_channel_status(),
        }
