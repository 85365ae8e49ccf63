"""
Deploy Monitor - Notification Channel Tests
===========================================
"""

import json
import smtplib

import httpx
import pytest

from deploy_monitor.core.alerts.config import (
    EmailChannelSettings,
    NotificationSettings,
    WebhookChannelSettings,
)
from deploy_monitor.core.alerts.notifications import (
    DashboardNotificationChannel,
    EmailNotificationChannel,
    NotificationDispatcher,
    NotificationEvent,
    WebhookNotificationChannel,
)
from deploy_monitor.core.exceptions import ChannelDeliveryError, ConfigurationError
from deploy_monitor.core.models import AlertType, Severity
from deploy_monitor.core.nerve_center.websocket_hub import SubscriptionBroadcaster
from deploy_monitor.core.schemas import Alert

from fakes import START_TIME, FakeWebSocket, RecordingChannel


def make_alert(**overrides) -> Alert:
    data = dict(
        signature="a" * 64,
        type=AlertType.PIPELINE_FAILURE,
        severity=Severity.CRITICAL,
        message="Pipeline run_x failed: build broke",
        first_seen=START_TIME,
        last_seen=START_TIME,
        last_notified_at=START_TIME,
        payload={"runId": "run_x", "error": "build broke"},
    )
    data.update(overrides)
    return Alert(**data)


class FakeSMTP:
    """Records the SMTP conversation instead of talking to a server."""

    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls: list[tuple] = []
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.calls.append(("starttls",))

    def login(self, username, password):
        self.calls.append(("login", username, password))

    def sendmail(self, sender, recipients, message):
        self.calls.append(("sendmail", sender, recipients, message))

    def quit(self):
        self.calls.append(("quit",))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, sender, recipients, message):
        raise smtplib.SMTPRecipientsRefused({recipients[0]: (550, b"no such user")})


# ==========================================================================
# Email
# ==========================================================================

class TestEmailChannel:
    """Tests for SMTP delivery."""

    def settings(self, **overrides) -> EmailChannelSettings:
        data = dict(
            enabled=True,
            recipients=["oncall@example.com", "lead@example.com"],
            from_address="monitor@example.com",
            smtp_host="smtp.example.com",
            smtp_port=2525,
            username="monitor",
            password="s3cret",
        )
        data.update(overrides)
        return EmailChannelSettings(**data)

    def test_subject_prefixes(self):
        alert = make_alert()

        assert EmailNotificationChannel.subject_for(NotificationEvent.ALERT_GENERATED, alert).startswith("[CRITICAL]")
        assert EmailNotificationChannel.subject_for(NotificationEvent.ALERT_RESOLVED, alert).startswith("[RESOLVED]")
        assert EmailNotificationChannel.subject_for(NotificationEvent.ALERT_ACKNOWLEDGED, alert).startswith("[ACK]")
        warning = make_alert(severity=Severity.WARNING, type=AlertType.SLOW_PIPELINE)
        assert EmailNotificationChannel.subject_for(NotificationEvent.ALERT_GENERATED, warning).startswith("[WARNING] Slow Pipeline")

    def test_message_has_text_and_html_parts(self):
        channel = EmailNotificationChannel(self.settings())

        message = channel.build_message(NotificationEvent.ALERT_GENERATED, make_alert())

        assert message["To"] == "oncall@example.com, lead@example.com"
        assert [part.get_content_type() for part in message.get_payload()] == ["text/plain", "text/html"]

    async def test_notify_sends_over_smtp(self):
        FakeSMTP.instances.clear()
        channel = EmailNotificationChannel(self.settings(), smtp_factory=FakeSMTP)

        await channel.notify(NotificationEvent.ALERT_GENERATED, make_alert())

        server = FakeSMTP.instances[-1]
        assert (server.host, server.port) == ("smtp.example.com", 2525)
        kinds = [call[0] for call in server.calls]
        assert kinds == ["starttls", "login", "sendmail", "quit"]
        assert server.calls[1] == ("login", "monitor", "s3cret")
        assert server.calls[2][2] == ["oncall@example.com", "lead@example.com"]

    async def test_smtp_failure_raises_delivery_error(self):
        channel = EmailNotificationChannel(self.settings(), smtp_factory=RefusingSMTP)

        with pytest.raises(ChannelDeliveryError) as exc_info:
            await channel.notify(NotificationEvent.ALERT_GENERATED, make_alert())

        assert exc_info.value.channel == "email"

    def test_enabled_without_host_is_a_configuration_error(self):
        channel = EmailNotificationChannel()

        with pytest.raises(ConfigurationError):
            channel.configure(self.settings(smtp_host=None))


# ==========================================================================
# Webhook
# ==========================================================================

class TestWebhookChannel:
    """Tests for HTTP delivery."""

    async def test_posts_event_body(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200, json={"ok": True})

        channel = WebhookNotificationChannel(
            WebhookChannelSettings(enabled=True, url="https://hooks.example.com/alerts", headers={"X-Token": "t"}),
            transport=httpx.MockTransport(handler),
        )

        await channel.notify(NotificationEvent.ALERT_RESOLVED, make_alert(resolved=True))

        request = received[0]
        body = json.loads(request.content)
        assert str(request.url) == "https://hooks.example.com/alerts"
        assert request.headers["X-Token"] == "t"
        assert body["event"] == "alert_resolved"
        assert body["alert"]["resolved"] is True
        assert "timestamp" in body

    async def test_non_success_status_raises(self):
        channel = WebhookNotificationChannel(
            WebhookChannelSettings(enabled=True, url="https://hooks.example.com/alerts"),
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )

        with pytest.raises(ChannelDeliveryError, match="503"):
            await channel.notify(NotificationEvent.ALERT_GENERATED, make_alert())

    async def test_transport_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        channel = WebhookNotificationChannel(
            WebhookChannelSettings(enabled=True, url="https://hooks.example.com/alerts"),
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(ChannelDeliveryError):
            await channel.notify(NotificationEvent.ALERT_GENERATED, make_alert())


# ==========================================================================
# Dashboard
# ==========================================================================

class TestDashboardChannel:
    """Alert events go to dashboards subscribed to them."""

    async def test_broadcasts_to_subscribers(self):
        broadcaster = SubscriptionBroadcaster()
        websocket = FakeWebSocket()
        client_id = await broadcaster.connect(websocket)
        await broadcaster.subscribe(client_id, ["alert_generated"])
        channel = DashboardNotificationChannel(broadcaster=broadcaster)

        await channel.notify(NotificationEvent.ALERT_GENERATED, make_alert())

        messages = websocket.of_type("alert_generated")
        assert messages[0]["data"]["signature"] == "a" * 64


# ==========================================================================
# Dispatcher
# ==========================================================================

class TestDispatcher:
    """Fan-out isolates channel failures."""

    async def test_failure_in_one_channel_does_not_stop_others(self):
        dispatcher = NotificationDispatcher()
        healthy = RecordingChannel()
        broken = RecordingChannel(fail=True)
        broken.name = "broken"
        dispatcher.register(healthy)
        dispatcher.register(broken)

        failures = await dispatcher.notify_all(NotificationEvent.ALERT_GENERATED, make_alert())

        assert len(healthy.events) == 1
        assert [failure.channel for failure in failures] == ["broken"]

    async def test_lifecycle_events_respect_channel_flag(self):
        dispatcher = NotificationDispatcher()
        quiet = RecordingChannel()
        quiet.settings = quiet.settings.model_copy(update={"notify_on_lifecycle": False})
        dispatcher.register(quiet)

        await dispatcher.notify_all(NotificationEvent.ALERT_RESOLVED, make_alert())
        await dispatcher.notify_all(NotificationEvent.ALERT_GENERATED, make_alert())

        assert [event for event, _ in quiet.events] == [NotificationEvent.ALERT_GENERATED]

    async def test_unregistered_channel_gets_nothing(self):
        dispatcher = NotificationDispatcher()
        recorder = RecordingChannel()
        dispatcher.register(recorder)

        assert dispatcher.unregister("recording") is recorder
        await dispatcher.notify_all(NotificationEvent.ALERT_GENERATED, make_alert())

        assert recorder.events == []
        assert dispatcher.get_channel("recording") is None

    async def test_dispatch_runs_in_background(self):
        dispatcher = NotificationDispatcher()
        recorder = RecordingChannel()
        dispatcher.register(recorder)

        dispatcher.dispatch(NotificationEvent.ALERT_GENERATED, make_alert())
        await dispatcher.drain()

        assert len(recorder.events) == 1

    def test_configure_disables_only_broken_channels(self):
        dispatcher = NotificationDispatcher()
        settings = NotificationSettings.model_validate({
            "email": {"enabled": True, "recipients": ["oncall@example.com"]},
            "webhook": {"enabled": True, "url": "https://hooks.example.com"},
        })

        errors = dispatcher.configure(settings)

        assert set(errors) == {"email"}
        assert dispatcher.get_channel("email").enabled is False
        assert dispatcher.get_channel("webhook").enabled is True
        status = dispatcher.get_channel_status()
        assert status["email"]["configurationError"] == errors["email"]
        assert status["console"]["enabled"] is True
