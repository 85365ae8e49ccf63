"""
Deploy Monitor - Database Models
================================

SQLAlchemy models for the persisted record collections.

Each table keeps the full JSON record in ``document`` and duplicates the
handful of fields used for ordering and filtering into indexed columns.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from deploy_monitor.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class TriggerType(str, enum.Enum):
    """What started a pipeline run."""
    MANUAL = "manual"
    GIT = "git"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


class StageStatus(str, enum.Enum):
    """Status of a single pipeline stage."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.FAILED)


class RunStatus(str, enum.Enum):
    """Overall pipeline run status."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class AlertType(str, enum.Enum):
    """Alert rules evaluated by the alert manager."""
    PIPELINE_FAILURE = "pipeline_failure"
    SLOW_PIPELINE = "slow_pipeline"
    STAGE_FAILURE = "stage_failure"
    SLOW_BUILD = "slow_build"
    WEBHOOK_TIMEOUT = "webhook_timeout"
    WEBHOOK_AUTH_FAILURE = "webhook_auth_failure"
    WEBHOOK_ERROR = "webhook_error"


class Severity(str, enum.Enum):
    """Alert severity levels, lowest first."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Pipeline runs
# ==========================================================================

class PipelineRunRow(Base, TimestampMixin):
    """Persisted pipeline run."""

    __tablename__ = "pipeline_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    trigger_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class WebhookRecordRow(Base, TimestampMixin):
    """Persisted webhook delivery record."""

    __tablename__ = "webhook_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class RunMetricsRow(Base, TimestampMixin):
    """Raw per-run metrics, keyed by run id."""

    __tablename__ = "run_metrics"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


# ==========================================================================
# Alerts
# ==========================================================================

class AlertSettingsRow(Base, TimestampMixin):
    """Thresholds, cooldowns and notification settings."""

    __tablename__ = "alert_settings"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class AlertRow(Base, TimestampMixin):
    """Alert state, kept for audit after resolution."""

    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    signature: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


# ==========================================================================
# Analytics
# ==========================================================================

class AnalyticsSnapshotRow(Base, TimestampMixin):
    """Bounded history of analytics snapshots."""

    __tablename__ = "analytics_snapshots"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    generated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class AnalyticsAggregateRow(Base, TimestampMixin):
    """Single current-aggregate record, overwritten on every update."""

    __tablename__ = "analytics_aggregates"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
