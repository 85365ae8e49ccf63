"""
Alert configuration structs.

Settings resolve in layers: explicit constructor arguments override the
persisted document, which overrides the compiled defaults below.
"""

from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, SecretStr

from deploy_monitor.core.models import AlertType, Severity
from deploy_monitor.core.schemas import validate_input

DEFAULT_SEVERITIES: dict[AlertType, Severity] = {
    AlertType.PIPELINE_FAILURE: Severity.CRITICAL,
    AlertType.SLOW_PIPELINE: Severity.WARNING,
    AlertType.STAGE_FAILURE: Severity.CRITICAL,
    AlertType.SLOW_BUILD: Severity.WARNING,
    AlertType.WEBHOOK_TIMEOUT: Severity.WARNING,
    AlertType.WEBHOOK_AUTH_FAILURE: Severity.CRITICAL,
    AlertType.WEBHOOK_ERROR: Severity.ERROR,
}

ALERT_DESCRIPTIONS: dict[AlertType, str] = {
    AlertType.PIPELINE_FAILURE: "Pipeline run finished in a failed state",
    AlertType.SLOW_PIPELINE: "Pipeline run exceeded the response time threshold",
    AlertType.STAGE_FAILURE: "A pipeline stage failed",
    AlertType.SLOW_BUILD: "Build stage exceeded the build time threshold",
    AlertType.WEBHOOK_TIMEOUT: "Webhook processing exceeded the timeout threshold",
    AlertType.WEBHOOK_AUTH_FAILURE: "Webhook authentication failed",
    AlertType.WEBHOOK_ERROR: "Webhook delivery returned a non-2xx response",
}


class ConfigSchema(BaseModel):
    """Configuration struct; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# ==========================================================================
# Rules
# ==========================================================================

class AlertThresholds(ConfigSchema):
    error_rate: float = Field(default=0.1, ge=0)
    response_time_ms: int = Field(default=5000, ge=0)
    failure_count: int = Field(default=3, ge=1)
    webhook_timeout_ms: int = Field(default=30000, ge=0)
    build_time_ms: int = Field(default=600000, ge=0)
    build_stage_name: str = "build_process"


class CooldownSettings(ConfigSchema):
    default_seconds: float = Field(default=300, ge=0)
    by_type: dict[AlertType, float] = Field(default_factory=dict)

    def window_for(self, alert_type: AlertType) -> timedelta:
        return timedelta(seconds=self.by_type.get(alert_type, self.default_seconds))


class AlertTypeSettings(ConfigSchema):
    enabled: bool = True
    severity: Severity


def _default_alert_types() -> dict[AlertType, AlertTypeSettings]:
    return {
        alert_type: AlertTypeSettings(severity=severity)
        for alert_type, severity in DEFAULT_SEVERITIES.items()
    }


# ==========================================================================
# Channels
# ==========================================================================

class ChannelSettings(ConfigSchema):
    enabled: bool = True
    notify_on_lifecycle: bool = True


class ConsoleChannelSettings(ChannelSettings):
    pass


class DashboardChannelSettings(ChannelSettings):
    pass


class EmailChannelSettings(ChannelSettings):
    enabled: bool = False
    recipients: list[EmailStr] = Field(default_factory=list)
    from_address: str = "alerts@deploy-monitor.local"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    use_tls: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0)


class WebhookChannelSettings(ChannelSettings):
    enabled: bool = False
    url: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=5.0, gt=0)
    verify_ssl: bool = True


class NotificationSettings(ConfigSchema):
    console: ConsoleChannelSettings = Field(default_factory=ConsoleChannelSettings)
    dashboard: DashboardChannelSettings = Field(default_factory=DashboardChannelSettings)
    email: EmailChannelSettings = Field(default_factory=EmailChannelSettings)
    webhook: WebhookChannelSettings = Field(default_factory=WebhookChannelSettings)


# ==========================================================================
# Aggregate
# ==========================================================================

class AlertSettings(ConfigSchema):
    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    cooldowns: CooldownSettings = Field(default_factory=CooldownSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    alert_types: dict[AlertType, AlertTypeSettings] = Field(default_factory=_default_alert_types)

    def severity_for(self, alert_type: AlertType) -> Severity:
        settings = self.alert_types.get(alert_type)
        return settings.severity if settings else DEFAULT_SEVERITIES[alert_type]

    def is_enabled(self, alert_type: AlertType) -> bool:
        settings = self.alert_types.get(alert_type)
        return settings.enabled if settings else True

    def to_document(self, *, include_secrets: bool = False) -> dict[str, Any]:
        """
        JSON document of the settings.

        Secrets are dropped unless ``include_secrets`` is set; they come from
        the environment on every start and are never written to storage.
        """
        document = self.model_dump(mode="json")
        email = document["notifications"]["email"]
        password = self.notifications.email.password
        if include_secrets and password is not None:
            email["password"] = password.get_secret_value()
        else:
            email.pop("password", None)
        return document


SettingsPatch = Union[Mapping[str, Any], BaseModel]


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``patch`` over ``base`` without mutating either."""
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def patch_to_dict(patch: Optional[SettingsPatch]) -> dict[str, Any]:
    if patch is None:
        return {}
    if isinstance(patch, BaseModel):
        return patch.model_dump(mode="json", exclude_unset=True)
    return _stringify_keys(patch)


def _stringify_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(getattr(key, "value", key)): _stringify_keys(item) for key, item in value.items()}
    return value


def normalize_notification_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Allow ``{"email": False}`` as shorthand for ``{"email": {"enabled": False}}``."""
    return {
        channel: {"enabled": value} if isinstance(value, bool) else value
        for channel, value in patch.items()
    }


def apply_patch(settings: AlertSettings, patch: Mapping[str, Any]) -> AlertSettings:
    """Validated copy of ``settings`` with ``patch`` merged in."""
    document = deep_merge(settings.to_document(include_secrets=True), patch)
    return validate_input(AlertSettings, document, "alert settings")


def resolve_alert_settings(
    persisted: Optional[Mapping[str, Any]] = None,
    explicit: Optional[SettingsPatch] = None,
) -> AlertSettings:
    """Compiled defaults, overridden by the persisted document, overridden by explicit values."""
    document = AlertSettings().to_document()
    if persisted:
        document = deep_merge(document, persisted)
    explicit_document = patch_to_dict(explicit)
    if "notifications" in explicit_document:
        explicit_document["notifications"] = normalize_notification_patch(explicit_document["notifications"])
    document = deep_merge(document, explicit_document)
    return validate_input(AlertSettings, document, "alert settings")
