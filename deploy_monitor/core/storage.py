"""
Deploy Monitor - Persistence Store
==================================

Durable storage for pipeline runs, webhook records, raw metrics, alert
configuration and state, and analytics snapshots.

The store is the source of truth. Every write is committed before the call
returns, and every storage failure surfaces as PersistenceError.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from deploy_monitor.core.clock import utc_now
from deploy_monitor.core.database import (
    Base,
    create_engine,
    create_session_factory,
    ensure_sqlite_directory,
)
from deploy_monitor.core.exceptions import PersistenceError
from deploy_monitor.core.models import (
    AlertRow,
    AlertSettingsRow,
    AnalyticsAggregateRow,
    AnalyticsSnapshotRow,
    PipelineRunRow,
    RunMetricsRow,
    RunStatus,
    WebhookRecordRow,
)
from deploy_monitor.core.schemas import Alert, PipelineRun, WebhookRecord

logger = logging.getLogger(__name__)

ALERT_SETTINGS_KEY = "alerts"
CURRENT_AGGREGATE_KEY = "current"


class PersistenceStore:
    """
    Async record store backed by SQLAlchemy.

    Sessions are serialised through a single lock: the monitor is a single
    writer, and SQLite in particular does not tolerate interleaved
    transactions on one connection.
    """

    def __init__(
        self,
        database_url: str,
        *,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.database_url = database_url
        self.engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
        )
        self._session_factory = create_session_factory(self.engine)
        self._lock = asyncio.Lock()
        self._closed = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def initialize(self) -> None:
        """Create tables if they do not exist."""
        try:
            ensure_sqlite_directory(self.database_url)
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Failed to initialize storage: {exc}") from exc
        logger.info(f"Storage initialized at {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        """Close database connections."""
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()
        logger.info("Storage connections closed")

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        try:
            async with self._session("ping storage") as session:
                await session.execute(text("SELECT 1"))
        except PersistenceError:
            return False
        return True

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncGenerator[AsyncSession, None]:
        """Single serialised unit of work that commits on success."""
        if self._closed:
            raise PersistenceError(f"Cannot {action}: storage is closed")
        async with self._lock:
            session = self._session_factory()
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(f"Storage failure while trying to {action}: {exc}")
                raise PersistenceError(f"Failed to {action}: {exc}") from exc
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ==========================================================================
    # Pipeline Runs
    # ==========================================================================

    async def save_run(
        self,
        run: PipelineRun,
        metrics: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Upsert a run, optionally with its metrics record in the same transaction."""
        async with self._session(f"save pipeline run {run.id}") as session:
            await session.merge(PipelineRunRow(
                id=run.id,
                status=run.status.value,
                trigger_type=run.trigger.type.value,
                start_time=run.start_time,
                document=run.to_record(),
            ))
            if metrics is not None:
                await session.merge(self._metrics_row(run.id, metrics))

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        async with self._session(f"load pipeline run {run_id}") as session:
            row = await session.get(PipelineRunRow, run_id)
            return PipelineRun.model_validate(row.document) if row else None

    async def list_runs(
        self,
        *,
        status: Optional[RunStatus] = None,
        trigger_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[PipelineRun]:
        """Runs ordered by start time, newest first."""
        query = select(PipelineRunRow).order_by(
            PipelineRunRow.start_time.desc(),
            PipelineRunRow.id.desc(),
        )
        if status is not None:
            query = query.where(PipelineRunRow.status == RunStatus(status).value)
        if trigger_type is not None:
            query = query.where(PipelineRunRow.trigger_type == str(getattr(trigger_type, "value", trigger_type)))
        if limit is not None:
            query = query.limit(limit)

        async with self._session("list pipeline runs") as session:
            rows = (await session.execute(query)).scalars().all()
            return [PipelineRun.model_validate(row.document) for row in rows]

    # ==========================================================================
    # Webhook Records
    # ==========================================================================

    async def save_webhook_record(self, record: WebhookRecord) -> None:
        async with self._session(f"save webhook record {record.id}") as session:
            await session.merge(WebhookRecordRow(
                id=record.id,
                run_id=record.run_id,
                sent_at=record.timing.sent,
                document=record.to_record(),
            ))

    async def get_webhook_record(self, record_id: str) -> Optional[WebhookRecord]:
        async with self._session(f"load webhook record {record_id}") as session:
            row = await session.get(WebhookRecordRow, record_id)
            return WebhookRecord.model_validate(row.document) if row else None

    async def list_webhook_records(self, run_id: Optional[str] = None) -> list[WebhookRecord]:
        query = select(WebhookRecordRow).order_by(WebhookRecordRow.sent_at.desc())
        if run_id is not None:
            query = query.where(WebhookRecordRow.run_id == run_id)
        async with self._session("list webhook records") as session:
            rows = (await session.execute(query)).scalars().all()
            return [WebhookRecord.model_validate(row.document) for row in rows]

    async def count_webhook_records(self, run_id: str) -> int:
        query = select(func.count()).select_from(WebhookRecordRow).where(WebhookRecordRow.run_id == run_id)
        async with self._session("count webhook records") as session:
            return (await session.execute(query)).scalar_one()

    # ==========================================================================
    # Metrics
    # ==========================================================================

    @staticmethod
    def _metrics_row(run_id: str, metrics: Mapping[str, Any]) -> RunMetricsRow:
        document = dict(metrics)
        document["timestamp"] = utc_now().isoformat()
        return RunMetricsRow(run_id=run_id, document=document)

    async def save_metrics(self, run_id: str, metrics: Mapping[str, Any]) -> None:
        async with self._session(f"save metrics for {run_id}") as session:
            await session.merge(self._metrics_row(run_id, metrics))

    async def get_metrics(self, run_id: str) -> Optional[dict[str, Any]]:
        async with self._session(f"load metrics for {run_id}") as session:
            row = await session.get(RunMetricsRow, run_id)
            return dict(row.document) if row else None

    async def get_all_metrics(self) -> dict[str, dict[str, Any]]:
        async with self._session("load metrics") as session:
            rows = (await session.execute(select(RunMetricsRow))).scalars().all()
            return {row.run_id: dict(row.document) for row in rows}

    # ==========================================================================
    # Alert Configuration and State
    # ==========================================================================

    async def load_alert_settings(self) -> Optional[dict[str, Any]]:
        async with self._session("load alert settings") as session:
            row = await session.get(AlertSettingsRow, ALERT_SETTINGS_KEY)
            return dict(row.document) if row else None

    async def save_alert_settings(self, document: Mapping[str, Any]) -> None:
        async with self._session("save alert settings") as session:
            await session.merge(AlertSettingsRow(key=ALERT_SETTINGS_KEY, document=dict(document)))

    async def save_alert(self, alert: Alert, *, active: bool) -> None:
        async with self._session(f"save alert {alert.signature}") as session:
            await session.merge(AlertRow(
                id=alert.id,
                signature=alert.signature,
                type=alert.type.value,
                severity=alert.severity.value,
                active=active,
                last_seen=alert.last_seen,
                document=alert.to_record(),
            ))

    async def list_alerts(
        self,
        *,
        active: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> list[Alert]:
        """Alerts ordered by last occurrence, newest first."""
        query = select(AlertRow).order_by(AlertRow.last_seen.desc(), AlertRow.id.desc())
        if active is not None:
            query = query.where(AlertRow.active == active)
        if limit is not None:
            query = query.limit(limit)
        async with self._session("list alerts") as session:
            rows = (await session.execute(query)).scalars().all()
            return [Alert.model_validate(row.document) for row in rows]

    async def delete_alerts(self, before: datetime, *, include_active: bool = False) -> int:
        """Remove alert rows last seen before ``before``."""
        statement = delete(AlertRow).where(AlertRow.last_seen < before)
        if not include_active:
            statement = statement.where(AlertRow.active.is_(False))
        async with self._session("delete alerts") as session:
            result = await session.execute(statement)
            return result.rowcount or 0

    # ==========================================================================
    # Analytics
    # ==========================================================================

    async def save_snapshot(self, snapshot: Mapping[str, Any], *, limit: Optional[int] = None) -> None:
        """Append a snapshot and evict the oldest ones past ``limit``."""
        generated_at = snapshot.get("generatedAt")
        async with self._session("save analytics snapshot") as session:
            session.add(AnalyticsSnapshotRow(
                generated_at=datetime.fromisoformat(generated_at) if isinstance(generated_at, str) else None,
                document=dict(snapshot),
            ))
            await session.flush()
            if limit is not None and limit > 0:
                stale = (await session.execute(
                    select(AnalyticsSnapshotRow.id)
                    .order_by(AnalyticsSnapshotRow.id.desc())
                    .offset(limit)
                )).scalars().all()
                if stale:
                    await session.execute(
                        delete(AnalyticsSnapshotRow).where(AnalyticsSnapshotRow.id.in_(stale))
                    )

    async def list_snapshots(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Most recent snapshots in chronological order."""
        query = select(AnalyticsSnapshotRow).order_by(AnalyticsSnapshotRow.id.desc())
        if limit is not None:
            query = query.limit(limit)
        async with self._session("list analytics snapshots") as session:
            rows = (await session.execute(query)).scalars().all()
            return [dict(row.document) for row in reversed(rows)]

    async def save_aggregates(self, document: Mapping[str, Any]) -> None:
        async with self._session("save analytics aggregates") as session:
            await session.merge(AnalyticsAggregateRow(key=CURRENT_AGGREGATE_KEY, document=dict(document)))

    async def get_aggregates(self) -> Optional[dict[str, Any]]:
        async with self._session("load analytics aggregates") as session:
            row = await session.get(AnalyticsAggregateRow, CURRENT_AGGREGATE_KEY)
            return dict(row.document) if row else None

    # ==========================================================================
    # Retention
    # ==========================================================================

    async def cleanup(self, keep_count: int) -> dict[str, int]:
        """
        Trim history to the newest ``keep_count`` runs and webhook records.

        Running runs are never removed. Metrics of removed runs go with them.

        Returns:
            Number of deleted runs and webhook records
        """
        async with self._session("clean up old records") as session:
            overflow = (await session.execute(
                select(PipelineRunRow.id, PipelineRunRow.status)
                .order_by(PipelineRunRow.start_time.desc(), PipelineRunRow.id.desc())
                .offset(keep_count)
            )).all()
            run_ids = [run_id for run_id, status in overflow if status != RunStatus.RUNNING.value]
            if run_ids:
                await session.execute(delete(PipelineRunRow).where(PipelineRunRow.id.in_(run_ids)))
                await session.execute(delete(RunMetricsRow).where(RunMetricsRow.run_id.in_(run_ids)))

            webhook_ids = (await session.execute(
                select(WebhookRecordRow.id)
                .order_by(WebhookRecordRow.sent_at.desc())
                .offset(keep_count)
            )).scalars().all()
            if webhook_ids:
                await session.execute(delete(WebhookRecordRow).where(WebhookRecordRow.id.in_(webhook_ids)))

        if run_ids or webhook_ids:
            logger.info(f"Cleaned up {len(run_ids)} runs and {len(webhook_ids)} webhook records")
        return {"runs": len(run_ids), "webhooks": len(webhook_ids)}
