"""
Alert Notifications - pluggable delivery channels.

Channels receive ``alert_generated`` for every notifying firing and the
``alert_acknowledged`` / ``alert_resolved`` lifecycle events when their
``notify_on_lifecycle`` flag is set. A channel failure is isolated: it is
collected and logged, never raised into the alert state change.
"""

import asyncio
import enum
import html
import json
import smtplib
import uuid
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any, Callable, Optional

import httpx
import structlog

from deploy_monitor.core.alerts.config import (
    ChannelSettings,
    ConsoleChannelSettings,
    DashboardChannelSettings,
    EmailChannelSettings,
    NotificationSettings,
    WebhookChannelSettings,
)
from deploy_monitor.core.background import BackgroundTasks
from deploy_monitor.core.clock import utc_now
from deploy_monitor.core.exceptions import ChannelDeliveryError, ConfigurationError
from deploy_monitor.core.models import Severity
from deploy_monitor.core.schemas import Alert

if TYPE_CHECKING:
    from deploy_monitor.core.nerve_center.websocket_hub import SubscriptionBroadcaster

logger = structlog.get_logger()


class NotificationEvent(str, enum.Enum):
    """Alert lifecycle events delivered to channels."""
    ALERT_GENERATED = "alert_generated"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_RESOLVED = "alert_resolved"

    @property
    def is_lifecycle(self) -> bool:
        return self is not NotificationEvent.ALERT_GENERATED


# ==========================================================================
# Channel Base
# ==========================================================================

class NotificationChannel(ABC):
    """Base class for delivery channels."""

    name: str = "channel"
    settings_class: type[ChannelSettings] = ChannelSettings

    def __init__(self, settings: Optional[ChannelSettings] = None):
        self.settings = settings or self.settings_class()
        self.configuration_error: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and self.configuration_error is None

    @property
    def notify_on_lifecycle(self) -> bool:
        return self.settings.notify_on_lifecycle

    def configure(self, settings: ChannelSettings) -> None:
        """
        Apply new settings.

        Raises:
            ConfigurationError: settings enable the channel without what it needs
        """
        self.settings = settings
        self.configuration_error = None
        if settings.enabled:
            self.validate()

    def validate(self) -> None:
        """Check the enabled channel has everything it needs."""

    def disable(self, reason: str) -> None:
        self.configuration_error = reason

    def accepts(self, event: NotificationEvent) -> bool:
        if not self.enabled:
            return False
        return not event.is_lifecycle or self.notify_on_lifecycle

    @abstractmethod
    async def notify(self, event: NotificationEvent, alert: Alert) -> None:
        """Deliver one event. Raises ChannelDeliveryError on failure."""

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "notifyOnLifecycle": self.notify_on_lifecycle,
            "configurationError": self.configuration_error,
        }


def event_body(event: NotificationEvent, alert: Alert) -> dict[str, Any]:
    return {
        "event": event.value,
        "alert": alert.to_record(),
        "timestamp": utc_now().isoformat(),
    }


# ==========================================================================
# Console
# ==========================================================================

class ConsoleNotificationChannel(NotificationChannel):
    """Writes alerts to the structured log."""

    name = "console"
    settings_class = ConsoleChannelSettings

    _LEVELS = {
        Severity.INFO: "info",
        Severity.WARNING: "warning",
        Severity.ERROR: "error",
        Severity.CRITICAL: "critical",
    }

    async def notify(self, event: NotificationEvent, alert: Alert) -> None:
        level = "info" if event.is_lifecycle else self._LEVELS.get(alert.severity, "info")
        getattr(logger, level)(
            event.value,
            signature=alert.signature[:12],
            alert_type=alert.type.value,
            severity=alert.severity.value,
            occurrences=alert.occurrences,
            message=alert.message,
        )


# ==========================================================================
# Dashboard
# ==========================================================================

class DashboardNotificationChannel(NotificationChannel):
    """Pushes alert events to subscribed dashboard clients."""

    name = "dashboard"
    settings_class = DashboardChannelSettings

    def __init__(
        self,
        settings: Optional[DashboardChannelSettings] = None,
        broadcaster: Optional["SubscriptionBroadcaster"] = None,
    ):
        super().__init__(settings)
        self.broadcaster = broadcaster

    async def notify(self, event: NotificationEvent, alert: Alert) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.broadcast(event.value, alert.to_record())
        except Exception as e:
            raise ChannelDeliveryError(self.name, f"Broadcast failed: {e}") from e


# ==========================================================================
# Email
# ==========================================================================

class EmailNotificationChannel(NotificationChannel):
    """Sends alert emails over SMTP."""

    name = "email"
    settings_class = EmailChannelSettings
    settings: EmailChannelSettings

    def __init__(
        self,
        settings: Optional[EmailChannelSettings] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        super().__init__(settings)
        self._smtp_factory = smtp_factory

    def validate(self) -> None:
        if not self.settings.smtp_host:
            raise ConfigurationError("Email channel enabled without an SMTP host", channel=self.name)
        if not self.settings.recipients:
            raise ConfigurationError("Email channel enabled without recipients", channel=self.name)

    @staticmethod
    def subject_for(event: NotificationEvent, alert: Alert) -> str:
        if event is NotificationEvent.ALERT_RESOLVED:
            prefix = "[RESOLVED]"
        elif event is NotificationEvent.ALERT_ACKNOWLEDGED:
            prefix = "[ACK]"
        elif alert.severity is Severity.CRITICAL:
            prefix = "[CRITICAL]"
        else:
            prefix = f"[{alert.severity.value.upper()}]"
        return f"{prefix} {alert.type.value.replace('_', ' ').title()}: {alert.message}"

    def build_message(self, event: NotificationEvent, alert: Alert) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = self.subject_for(event, alert)
        message["From"] = self.settings.from_address
        message["To"] = ", ".join(self.settings.recipients)
        message["Message-ID"] = f"<{uuid.uuid4()}@{self.settings.smtp_host}>"

        details = json.dumps(alert.payload, indent=2, sort_keys=True, default=str)
        text = (
            f"{alert.message}\n\n"
            f"Event: {event.value}\n"
            f"Type: {alert.type.value}\n"
            f"Severity: {alert.severity.value}\n"
            f"Occurrences: {alert.occurrences}\n"
            f"First seen: {alert.first_seen.isoformat()}\n"
            f"Last seen: {alert.last_seen.isoformat()}\n\n"
            f"Details:\n{details}\n"
        )
        rows = "".join(
            f"<tr><th align='left'>{html.escape(label)}</th><td>{html.escape(str(value))}</td></tr>"
            for label, value in (
                ("Type", alert.type.value),
                ("Severity", alert.severity.value),
                ("Occurrences", alert.occurrences),
                ("First seen", alert.first_seen.isoformat()),
                ("Last seen", alert.last_seen.isoformat()),
            )
        )
        body = (
            f"<h2>{html.escape(alert.message)}</h2>"
            f"<table>{rows}</table>"
            f"<pre>{html.escape(details)}</pre>"
        )
        message.attach(MIMEText(text, "plain"))
        message.attach(MIMEText(body, "html"))
        return message

    def _send(self, message: MIMEMultipart) -> None:
        settings = self.settings
        server = self._smtp_factory(settings.smtp_host, settings.smtp_port, timeout=settings.timeout_seconds)
        try:
            if settings.use_tls:
                server.starttls()
            if settings.username and settings.password:
                server.login(settings.username, settings.password.get_secret_value())
            server.sendmail(settings.from_address, list(settings.recipients), message.as_string())
        finally:
            try:
                server.quit()
            except smtplib.SMTPException:
                pass

    async def notify(self, event: NotificationEvent, alert: Alert) -> None:
        message = self.build_message(event, alert)
        try:
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelDeliveryError(self.name, f"SMTP delivery failed: {e}") from e
        logger.info("alert_email_sent", signature=alert.signature[:12], recipients=len(self.settings.recipients))


# ==========================================================================
# Webhook
# ==========================================================================

class WebhookNotificationChannel(NotificationChannel):
    """POSTs ``{event, alert, timestamp}`` to a configured URL."""

    name = "webhook"
    settings_class = WebhookChannelSettings
    settings: WebhookChannelSettings

    def __init__(
        self,
        settings: Optional[WebhookChannelSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings)
        self._transport = transport

    def validate(self) -> None:
        if not self.settings.url:
            raise ConfigurationError("Webhook channel enabled without a URL", channel=self.name)

    async def notify(self, event: NotificationEvent, alert: Alert) -> None:
        settings = self.settings
        headers = {"Content-Type": "application/json", **settings.headers}
        try:
            async with httpx.AsyncClient(
                timeout=settings.timeout_seconds,
                verify=settings.verify_ssl,
                transport=self._transport,
            ) as client:
                response = await client.post(settings.url, json=event_body(event, alert), headers=headers)
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(self.name, f"Request failed: {e}") from e

        if not response.is_success:
            raise ChannelDeliveryError(self.name, f"Webhook returned HTTP {response.status_code}")


# ==========================================================================
# Dispatcher
# ==========================================================================

class NotificationDispatcher:
    """
    Registry of channels plus an isolating fan-out.

    ``dispatch`` is fire-and-forget; ``notify_all`` awaits every channel and
    returns the collected delivery errors.
    """

    def __init__(self, broadcaster: Optional["SubscriptionBroadcaster"] = None):
        self.channels: dict[str, NotificationChannel] = {}
        self.configuration_errors: dict[str, str] = {}
        self._tasks = BackgroundTasks("notifications")

        self.register(ConsoleNotificationChannel())
        self.register(DashboardNotificationChannel(broadcaster=broadcaster))
        self.register(EmailNotificationChannel())
        self.register(WebhookNotificationChannel())

    def register(self, channel: NotificationChannel) -> None:
        self.channels[channel.name] = channel

    def unregister(self, name: str) -> Optional[NotificationChannel]:
        return self.channels.pop(name, None)

    def get_channel(self, name: str) -> Optional[NotificationChannel]:
        return self.channels.get(name)

    def configure(self, settings: NotificationSettings) -> dict[str, str]:
        """
        Apply per-channel settings.

        A channel with invalid settings is disabled and its error recorded;
        the remaining channels are configured normally.

        Returns:
            Channel name -> configuration error
        """
        self.configuration_errors = {}
        for name in NotificationSettings.model_fields:
            channel = self.channels.get(name)
            if channel is None:
                continue
            try:
                channel.configure(getattr(settings, name))
            except ConfigurationError as e:
                channel.disable(str(e))
                self.configuration_errors[name] = str(e)
                logger.error("notification_channel_disabled", channel=name, error=str(e))
        return dict(self.configuration_errors)

    async def notify_all(self, event: NotificationEvent, alert: Alert) -> list[ChannelDeliveryError]:
        recipients = [channel for channel in self.channels.values() if channel.accepts(event)]
        results = await asyncio.gather(
            *(channel.notify(event, alert) for channel in recipients),
            return_exceptions=True,
        )

        failures: list[ChannelDeliveryError] = []
        for channel, result in zip(recipients, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                error = result if isinstance(result, ChannelDeliveryError) else ChannelDeliveryError(channel.name, str(result))
                failures.append(error)
                logger.warning(
                    "notification_delivery_failed",
                    channel=channel.name,
                    event=event.value,
                    signature=alert.signature[:12],
                    error=str(error),
                )
        return failures

    def dispatch(self, event: NotificationEvent, alert: Alert) -> asyncio.Task:
        """Deliver in the background; the caller never waits on channels."""
        return self._tasks.spawn(self.notify_all(event, alert), label=f"{event.value}:{alert.signature[:12]}")

    async def drain(self) -> None:
        await self._tasks.drain()

    def get_channel_status(self) -> dict[str, dict[str, Any]]:
        return {name: channel.status() for name, channel in self.channels.items()}
