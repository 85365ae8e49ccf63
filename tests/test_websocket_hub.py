"""
Deploy Monitor - WebSocket Hub Tests
====================================
"""

import pytest
from fastapi import WebSocketDisconnect

from deploy_monitor.core.nerve_center.events import EventType
from deploy_monitor.core.nerve_center.websocket_hub import SubscriptionBroadcaster, websocket_endpoint

from fakes import FakeWebSocket


@pytest.fixture
def hub() -> SubscriptionBroadcaster:
    async def status():
        return {"monitoring": True, "activeRuns": 0}

    async def recent_runs(limit):
        return [{"id": f"run_{index}"} for index in range(limit)]

    return SubscriptionBroadcaster(status_provider=status, recent_runs_provider=recent_runs)


class TestConnections:
    """Tests for connect and disconnect."""

    async def test_welcome_message(self, hub):
        websocket = FakeWebSocket()

        client_id = await hub.connect(websocket)

        assert websocket.accepted
        welcome = websocket.of_type("welcome")[0]
        assert welcome["data"]["clientId"] == client_id
        assert "serverTime" in welcome["data"]
        assert hub.connections[client_id].subscriptions == set()

    async def test_disconnect_is_idempotent(self, hub):
        client_id = await hub.connect(FakeWebSocket())

        await hub.disconnect(client_id)
        await hub.disconnect(client_id)

        assert client_id not in hub.connections

    async def test_close_sends_going_away(self, hub):
        websocket = FakeWebSocket()
        await hub.connect(websocket)

        await hub.close()

        assert websocket.closed_with == 1001
        assert hub.connections == {}


# ==========================================================================
# Subscriptions
# ==========================================================================

class TestSubscriptions:
    """Broadcasts reach subscribed clients only."""

    async def test_broadcast_respects_subscriptions(self, hub):
        generated_only = FakeWebSocket()
        silent = FakeWebSocket()
        generated_id = await hub.connect(generated_only)
        await hub.connect(silent)
        await hub.subscribe(generated_id, ["alert_generated"])

        delivered = await hub.broadcast(EventType.ALERT_GENERATED, {"signature": "abc"})
        await hub.broadcast(EventType.ALERT_RESOLVED, {"signature": "abc"})

        assert delivered == 1
        assert [message["data"] for message in generated_only.of_type("alert_generated")] == [{"signature": "abc"}]
        assert generated_only.of_type("alert_resolved") == []
        assert [message["type"] for message in silent.messages()] == ["welcome"]

    async def test_all_subscription_receives_everything(self, hub):
        websocket = FakeWebSocket()
        client_id = await hub.connect(websocket)
        await hub.subscribe(client_id, "all")

        await hub.broadcast("pipeline_started", {"id": "run_1"})
        await hub.broadcast("alert_resolved", {"signature": "abc"})

        assert len(websocket.of_type("pipeline_started")) == 1
        assert len(websocket.of_type("alert_resolved")) == 1

    async def test_subscription_confirmation(self, hub):
        websocket = FakeWebSocket()
        client_id = await hub.connect(websocket)

        await hub.handle_message(client_id, {"type": "subscribe", "events": ["pipeline_started", "pipeline_completed"]})
        await hub.handle_message(client_id, {"type": "unsubscribe", "events": ["pipeline_started"]})

        confirmed = websocket.of_type("subscription_confirmed")[0]["data"]
        assert confirmed == {"events": ["pipeline_started", "pipeline_completed"], "totalSubscriptions": 2}
        removed = websocket.of_type("unsubscription_confirmed")[0]["data"]
        assert removed["totalSubscriptions"] == 1
        assert hub.connections[client_id].subscriptions == {"pipeline_completed"}

    async def test_unknown_client_is_ignored(self, hub):
        assert await hub.subscribe("client_missing", ["all"]) is None
        assert await hub.broadcast("pipeline_started", {}) == 0

    async def test_failed_send_drops_client(self, hub):
        healthy = FakeWebSocket()
        healthy_id = await hub.connect(healthy)
        broken = FakeWebSocket()
        broken_id = await hub.connect(broken)
        await hub.subscribe(healthy_id, ["all"])
        await hub.subscribe(broken_id, ["all"])
        broken.fail = True

        delivered = await hub.broadcast("pipeline_updated", {"id": "run_1"})

        assert delivered == 1
        assert broken_id not in hub.connections
        assert healthy_id in hub.connections


# ==========================================================================
# Requests
# ==========================================================================

class TestRequests:
    """Replies go to the requesting client only."""

    async def test_ping_pong(self, hub):
        websocket = FakeWebSocket()
        client_id = await hub.connect(websocket)

        await hub.handle_message(client_id, {"type": "ping", "timestamp": "2026-01-01T12:00:00Z"})

        assert websocket.of_type("pong")[0]["data"] == {"received": "2026-01-01T12:00:00Z"}

    async def test_status_and_recent_runs(self, hub):
        requester = FakeWebSocket()
        bystander = FakeWebSocket()
        client_id = await hub.connect(requester)
        await hub.subscribe(await hub.connect(bystander), ["all"])

        await hub.handle_message(client_id, {"type": "get_status"})
        await hub.handle_message(client_id, {"type": "get_recent_runs", "limit": 2})

        assert requester.of_type("status_response")[0]["data"] == {"monitoring": True, "activeRuns": 0}
        runs = requester.of_type("recent_runs_response")[0]["data"]
        assert [run["id"] for run in runs] == ["run_0", "run_1"]
        assert bystander.of_type("status_response") == []

    async def test_requests_without_provider_reply_with_error(self):
        hub = SubscriptionBroadcaster()
        websocket = FakeWebSocket()
        client_id = await hub.connect(websocket)

        await hub.handle_message(client_id, {"type": "get_status"})

        assert "not available" in websocket.of_type("error")[0]["data"]["error"]

    async def test_failing_provider_replies_with_error(self):
        async def broken_status():
            raise RuntimeError("database down")

        hub = SubscriptionBroadcaster(status_provider=broken_status)
        websocket = FakeWebSocket()
        client_id = await hub.connect(websocket)

        await hub.handle_message(client_id, {"type": "get_status"})

        assert websocket.of_type("error")[0]["data"] == {"error": "Failed to build status_response"}
        assert client_id in hub.connections

    async def test_unknown_message_type(self, hub):
        websocket = FakeWebSocket()
        client_id = await hub.connect(websocket)

        await hub.handle_message(client_id, {"type": "launch_rockets"})

        assert websocket.of_type("error")[0]["data"] == {"error": "Unknown message type: launch_rockets"}

    async def test_send_error_reaches_client(self, hub):
        websocket = FakeWebSocket()
        client_id = await hub.connect(websocket)

        await hub.send_error(client_id, "Invalid JSON")

        assert websocket.of_type("error")[0]["data"] == {"error": "Invalid JSON"}


class ScriptedWebSocket(FakeWebSocket):
    """Plays back incoming frames, then disconnects."""

    def __init__(self, frames: list[str]):
        super().__init__()
        self.frames = list(frames)

    async def receive_text(self) -> str:
        if not self.frames:
            raise WebSocketDisconnect(code=1000)
        return self.frames.pop(0)


class TestEndpoint:
    """Tests for the receive loop."""

    async def test_malformed_frames_get_error_replies(self, hub):
        websocket = ScriptedWebSocket(["{not json", "[1, 2]", '{"type": "ping"}'])

        await websocket_endpoint(websocket, hub)

        errors = [message["data"]["error"] for message in websocket.of_type("error")]
        assert errors == ["Invalid JSON", "Message must be a JSON object"]
        assert len(websocket.of_type("pong")) == 1
        assert hub.connections == {}


class TestStats:
    async def test_stats_count_subscriptions(self, hub):
        first = await hub.connect(FakeWebSocket())
        second = await hub.connect(FakeWebSocket())
        await hub.subscribe(first, ["alert_generated", "pipeline_started"])
        await hub.subscribe(second, ["alert_generated"])
        await hub.broadcast("alert_generated", {})

        stats = hub.get_stats()

        assert stats["connectedClients"] == 2
        assert stats["messagesBroadcast"] == 1
        assert stats["subscriptions"] == {"alert_generated": 2, "pipeline_started": 1}
        assert {client["id"] for client in stats["clients"]} == {first, second}
