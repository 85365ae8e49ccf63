"""
Deploy Monitor - Test Doubles
=============================

Clock, channel and WebSocket fakes shared by the test modules.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from starlette.websockets import WebSocketState

from deploy_monitor.core.alerts.notifications import NotificationChannel, NotificationEvent
from deploy_monitor.core.exceptions import ChannelDeliveryError
from deploy_monitor.core.schemas import Alert, TriggerEvent

START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.now


class RecordingChannel(NotificationChannel):
    """Channel that keeps every delivered event in memory."""

    name = "recording"

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.events: list[tuple[NotificationEvent, Alert]] = []

    async def notify(self, event: NotificationEvent, alert: Alert) -> None:
        if self.fail:
            raise ChannelDeliveryError(self.name, "recording channel is down")
        self.events.append((event, alert))

    def of(self, event: NotificationEvent) -> list[Alert]:
        return [alert for recorded, alert in self.events if recorded is event]


class FakeWebSocket:
    """Minimal stand-in for a starlette WebSocket."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.closed_with: Optional[int] = None
        self.sent: list[str] = []
        self.client_state = WebSocketState.CONNECTING

    async def accept(self) -> None:
        self.accepted = True
        self.client_state = WebSocketState.CONNECTED

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        self.client_state = WebSocketState.DISCONNECTED

    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(raw) for raw in self.sent]

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [message for message in self.messages() if message["type"] == message_type]


def make_trigger(**overrides: Any) -> TriggerEvent:
    data = {
        "type": "git",
        "source": "github",
        "timestamp": START_TIME,
        "metadata": {"branch": "main", "commit": "abc123"},
    }
    data.update(overrides)
    return TriggerEvent.model_validate(data)

