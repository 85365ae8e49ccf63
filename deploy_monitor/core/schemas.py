"""
Deploy Monitor - Pydantic Schemas
=================================

Domain records and API request/response schemas.

Domain records serialise to camelCase JSON (``startTime``, ``runId``) which
is the shape persisted to storage and pushed to dashboard clients.
"""

from datetime import datetime
from typing import Annotated, Any, Optional, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
)
from pydantic.alias_generators import to_camel

from deploy_monitor.core.clock import ensure_utc
from deploy_monitor.core.exceptions import ValidationError
from deploy_monitor.core.ids import new_alert_id, new_error_id, new_webhook_id
from deploy_monitor.core.models import (
    AlertType,
    RunStatus,
    Severity,
    StageStatus,
    TriggerType,
)

UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class RecordSchema(BaseSchema):
    """Domain record serialised with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel)

    def to_record(self) -> dict[str, Any]:
        """JSON-compatible record as persisted and broadcast."""
        return self.model_dump(mode="json", by_alias=True)


ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_input(model_cls: type[ModelT], data: Any, what: str) -> ModelT:
    """
    Validate collaborator input into ``model_cls``.

    Raises:
        ValidationError: with one entry per offending field
    """
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or what}: {error['msg']}"
            for error in exc.errors()
        ]
        raise ValidationError(f"Invalid {what}", errors=errors) from exc


# ==========================================================================
# Pipeline Runs
# ==========================================================================

class TriggerEvent(RecordSchema):
    """External event that starts a pipeline run. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    type: TriggerType
    source: str = Field(min_length=1)
    timestamp: UTCDateTime
    metadata: dict[str, Any] = Field(default_factory=dict)


class PipelineStage(RecordSchema):
    """Named phase of a run with its own status and timing."""

    name: str = Field(min_length=1)
    status: StageStatus = StageStatus.PENDING
    start_time: Optional[UTCDateTime] = None
    end_time: Optional[UTCDateTime] = None
    duration: Optional[int] = None  # milliseconds
    data: dict[str, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class ErrorRecord(RecordSchema):
    """Error attached to a run. Append-only."""

    id: str = Field(default_factory=new_error_id)
    stage: str = Field(min_length=1)
    type: str = Field(min_length=1)
    message: str = Field(min_length=1)
    timestamp: UTCDateTime
    context: dict[str, Any] = Field(default_factory=dict)


class PerformanceMetrics(RecordSchema):
    """
    Run metrics computed at completion.

    Collaborators may report additional numeric metrics; they are kept
    alongside the named ones and take part in anomaly detection.
    """

    model_config = ConfigDict(extra="allow")

    webhook_latency: float = Field(default=0, ge=0)
    build_time: float = Field(default=0, ge=0)
    deployment_time: float = Field(default=0, ge=0)
    site_response_time: float = Field(default=0, ge=0)
    total_pipeline_time: float = Field(default=0, ge=0)
    error_rate: float = Field(default=0, ge=0, le=100)
    success_rate: float = Field(default=0, ge=0, le=100)
    throughput: float = Field(default=0, ge=0)


class PipelineRun(RecordSchema):
    """One end-to-end execution of trigger, build, deploy and validate."""

    id: str
    trigger: TriggerEvent
    stages: list[PipelineStage] = Field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    start_time: UTCDateTime
    end_time: Optional[UTCDateTime] = None
    duration: Optional[int] = None  # milliseconds
    success: bool = False
    errors: list[ErrorRecord] = Field(default_factory=list)
    metrics: Optional[PerformanceMetrics] = None

    def get_stage(self, name: str) -> Optional[PipelineStage]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    @property
    def failed_stages(self) -> list[PipelineStage]:
        return [stage for stage in self.stages if stage.status == StageStatus.FAILED]

    def summary(self) -> dict[str, Any]:
        """Compact projection for status replies and listings."""
        return {
            "id": self.id,
            "status": self.status.value,
            "success": self.success,
            "triggerType": self.trigger.type.value,
            "startTime": self.start_time.isoformat(),
            "duration": self.duration,
            "stageCount": len(self.stages),
            "errorCount": len(self.errors),
        }


# ==========================================================================
# Webhook Records
# ==========================================================================

class RetryAttempt(RecordSchema):
    attempt: int = Field(ge=1)
    timestamp: UTCDateTime
    reason: str = ""
    success: bool = False


class WebhookTiming(RecordSchema):
    sent: UTCDateTime
    received: Optional[UTCDateTime] = None
    processed: Optional[UTCDateTime] = None


class WebhookAuthentication(RecordSchema):
    method: str = "none"
    success: bool = True
    errors: list[str] = Field(default_factory=list)


class WebhookResponse(RecordSchema):
    status: int = Field(ge=100, le=599)
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


class WebhookRecord(RecordSchema):
    """A webhook delivery associated with a pipeline run."""

    id: str = Field(default_factory=new_webhook_id)
    run_id: str = Field(min_length=1)
    source: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    response: WebhookResponse
    timing: WebhookTiming
    authentication: WebhookAuthentication = Field(default_factory=WebhookAuthentication)
    retries: list[RetryAttempt] = Field(default_factory=list)


# ==========================================================================
# Alerts
# ==========================================================================

class Alert(RecordSchema):
    """
    Deduplicated alert.

    ``occurrences`` counts every firing of the signature while the alert is
    active; ``last_notified_at`` marks the start of the current cooldown window.
    """

    id: str = Field(default_factory=new_alert_id)
    signature: str
    type: AlertType
    severity: Severity
    message: str = ""
    occurrences: int = Field(default=1, ge=1)
    first_seen: UTCDateTime
    last_seen: UTCDateTime
    last_notified_at: UTCDateTime
    acknowledged: bool = False
    acknowledged_at: Optional[UTCDateTime] = None
    acknowledged_by: Optional[str] = None
    acknowledgement_note: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[UTCDateTime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


# ==========================================================================
# Reports
# ==========================================================================

class RunSummary(RecordSchema):
    status: RunStatus
    success: bool
    duration: Optional[int]
    trigger_type: TriggerType
    trigger_source: str
    start_time: UTCDateTime
    end_time: Optional[UTCDateTime]


class StageSummary(RecordSchema):
    name: str
    status: StageStatus
    duration: Optional[int]
    errors: list[str]


class RunReport(RecordSchema):
    """Read-only projection of a run for external report renderers."""

    run_id: str
    summary: RunSummary
    stages: list[StageSummary]
    errors: list[ErrorRecord]
    webhooks: int
    metrics: Optional[PerformanceMetrics]
    detailed_metrics: Optional[dict[str, Any]] = None


# ==========================================================================
# API Schemas
# ==========================================================================

class StageUpdateRequest(BaseSchema):
    stage_name: str = Field(min_length=1, alias="stageName")
    status: StageStatus
    data: dict[str, Any] = Field(default_factory=dict)


class ErrorCreateRequest(BaseSchema):
    stage: str = Field(min_length=1)
    type: str = Field(min_length=1)
    message: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)


class CompleteRunRequest(BaseSchema):
    success: bool
    metrics: Optional[dict[str, Any]] = None


class AlertActionRequest(BaseSchema):
    actor: str = "api"
    note: Optional[str] = None


class RunCreatedResponse(BaseSchema):
    run_id: str = Field(serialization_alias="runId")


class ErrorResponse(BaseSchema):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    errors: list[str] = Field(default_factory=list)


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    monitoring: bool
    connected_clients: int
