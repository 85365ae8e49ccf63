"""
Deploy Monitor Nerve Center - WebSocket Hub
===========================================

Live client connections with per-client event subscriptions.
Clients start subscribed to nothing; ``broadcast`` reaches only clients
subscribed to the event type (or to ``all``).
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from deploy_monitor.core.clock import utc_now
from .events import ALL_EVENTS, WSMessage, WSMessageType

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Awaitable[dict[str, Any]]]
RecentRunsProvider = Callable[[int], Awaitable[list[Any]]]

DEFAULT_RECENT_RUNS = 10


# ==========================================================================
# Connection Manager
# ==========================================================================

@dataclass
class ClientConnection:
    """Represents a connected WebSocket client"""
    id: str
    websocket: WebSocket
    connected_at: str = field(default_factory=lambda: utc_now().isoformat())
    subscriptions: set[str] = field(default_factory=set)
    messages_sent: int = 0
    is_active: bool = True

    def wants(self, event_type: str) -> bool:
        return event_type in self.subscriptions or ALL_EVENTS in self.subscriptions


class SubscriptionBroadcaster:
    """
    Manages WebSocket connections and event distribution.

    ``status_provider`` and ``recent_runs_provider`` answer ``get_status``
    and ``get_recent_runs`` requests; replies go to the requesting client only.
    """

    def __init__(
        self,
        status_provider: Optional[StatusProvider] = None,
        recent_runs_provider: Optional[RecentRunsProvider] = None,
    ):
        self.connections: dict[str, ClientConnection] = {}
        self.status_provider = status_provider
        self.recent_runs_provider = recent_runs_provider
        self.messages_broadcast = 0
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        """Accept new WebSocket connection"""
        await websocket.accept()

        client_id = f"client_{uuid4().hex[:12]}"
        connection = ClientConnection(id=client_id, websocket=websocket)

        async with self._lock:
            self.connections[client_id] = connection

        await self._send_to_client(client_id, WSMessage(
            type=WSMessageType.WELCOME,
            data={
                "clientId": client_id,
                "message": "Connected to pipeline monitor",
                "serverTime": utc_now().isoformat(),
            },
        ))

        logger.info(f"Client {client_id} connected. Total: {len(self.connections)}")
        return client_id

    async def disconnect(self, client_id: str) -> None:
        """Handle client disconnection"""
        async with self._lock:
            connection = self.connections.pop(client_id, None)
        if connection is None:
            return
        connection.is_active = False
        connection.subscriptions.clear()
        logger.info(f"Client {client_id} disconnected. Total: {len(self.connections)}")

    # ==========================================================================
    # Subscriptions
    # ==========================================================================

    @staticmethod
    def _event_names(events: Any) -> list[str]:
        if isinstance(events, str):
            events = [events]
        if not isinstance(events, Iterable):
            return []
        return [str(getattr(event, "value", event)) for event in events if event]

    async def subscribe(self, client_id: str, events: Any) -> Optional[set[str]]:
        connection = self.connections.get(client_id)
        if connection is None:
            return None
        names = self._event_names(events)
        connection.subscriptions.update(names)
        await self._send_to_client(client_id, WSMessage(
            type=WSMessageType.SUBSCRIPTION_CONFIRMED,
            data={"events": names, "totalSubscriptions": len(connection.subscriptions)},
        ))
        logger.debug(f"Client {client_id} subscribed to {names}")
        return set(connection.subscriptions)

    async def unsubscribe(self, client_id: str, events: Any) -> Optional[set[str]]:
        connection = self.connections.get(client_id)
        if connection is None:
            return None
        names = self._event_names(events)
        connection.subscriptions.difference_update(names)
        await self._send_to_client(client_id, WSMessage(
            type=WSMessageType.UNSUBSCRIPTION_CONFIRMED,
            data={"events": names, "totalSubscriptions": len(connection.subscriptions)},
        ))
        return set(connection.subscriptions)

    # ==========================================================================
    # Incoming Messages
    # ==========================================================================

    async def handle_message(self, client_id: str, message: dict[str, Any]) -> None:
        """Handle incoming message from client"""
        if client_id not in self.connections:
            return

        data = message.get("data") if isinstance(message.get("data"), dict) else {}
        message_type = message.get("type")

        if message_type == WSMessageType.SUBSCRIBE:
            await self.subscribe(client_id, message.get("events", data.get("events", [])))

        elif message_type == WSMessageType.UNSUBSCRIBE:
            await self.unsubscribe(client_id, message.get("events", data.get("events", [])))

        elif message_type == WSMessageType.PING:
            await self._send_to_client(client_id, WSMessage(
                type=WSMessageType.PONG,
                data={"received": message.get("timestamp")},
            ))

        elif message_type == WSMessageType.GET_STATUS:
            await self._reply_with(client_id, WSMessageType.STATUS_RESPONSE, self.status_provider)

        elif message_type == WSMessageType.GET_RECENT_RUNS:
            limit = message.get("limit", data.get("limit", DEFAULT_RECENT_RUNS))
            provider = self.recent_runs_provider
            await self._reply_with(
                client_id,
                WSMessageType.RECENT_RUNS_RESPONSE,
                (lambda: provider(int(limit))) if provider else None,
            )

        else:
            await self.send_error(client_id, f"Unknown message type: {message_type}")

    async def _reply_with(
        self,
        client_id: str,
        reply_type: WSMessageType,
        provider: Optional[Callable[[], Awaitable[Any]]],
    ) -> None:
        if provider is None:
            await self.send_error(client_id, f"{reply_type.value} is not available")
            return
        try:
            payload = await provider()
        except Exception as e:
            logger.error(f"Failed to build {reply_type.value} for {client_id}: {e}")
            await self.send_error(client_id, f"Failed to build {reply_type.value}")
            return
        await self._send_to_client(client_id, WSMessage(type=reply_type, data=payload))

    async def send_error(self, client_id: str, error: str) -> None:
        await self._send_to_client(client_id, WSMessage(type=WSMessageType.ERROR, data={"error": error}))

    # ==========================================================================
    # Delivery
    # ==========================================================================

    async def _send_to_client(self, client_id: str, message: WSMessage) -> bool:
        """Send message to specific client; a failed send drops the client."""
        connection = self.connections.get(client_id)
        if not connection or not connection.is_active:
            return False

        try:
            if connection.websocket.client_state != WebSocketState.CONNECTED:
                raise ConnectionError("socket is not connected")
            await connection.websocket.send_text(message.to_json())
        except Exception as e:
            logger.warning(f"Error sending to {client_id}, dropping client: {e}")
            await self.disconnect(client_id)
            return False

        connection.messages_sent += 1
        return True

    async def broadcast(self, event_type: str, data: Any) -> int:
        """
        Deliver ``{type, data}`` to every client subscribed to ``event_type``.

        Returns:
            Number of clients the message reached
        """
        event_type = str(getattr(event_type, "value", event_type))
        message = WSMessage(type=event_type, data=data)
        targets = [
            client_id
            for client_id, connection in list(self.connections.items())
            if connection.is_active and connection.wants(event_type)
        ]
        if not targets:
            return 0

        results = await asyncio.gather(*(self._send_to_client(client_id, message) for client_id in targets))
        delivered = sum(1 for ok in results if ok)
        self.messages_broadcast += 1
        return delivered

    def get_stats(self) -> dict[str, Any]:
        subscriptions: dict[str, int] = {}
        for connection in self.connections.values():
            for event in connection.subscriptions:
                subscriptions[event] = subscriptions.get(event, 0) + 1
        return {
            "connectedClients": len(self.connections),
            "messagesBroadcast": self.messages_broadcast,
            "subscriptions": subscriptions,
            "clients": [
                {
                    "id": connection.id,
                    "connectedAt": connection.connected_at,
                    "subscriptions": sorted(connection.subscriptions),
                    "messagesSent": connection.messages_sent,
                }
                for connection in self.connections.values()
            ],
        }

    async def close(self) -> None:
        """Close every client socket."""
        for client_id, connection in list(self.connections.items()):
            try:
                if connection.websocket.client_state == WebSocketState.CONNECTED:
                    await connection.websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing {client_id}: {e}")
            await self.disconnect(client_id)


# ==========================================================================
# FastAPI WebSocket Endpoint
# ==========================================================================

async def websocket_endpoint(websocket: WebSocket, broadcaster: SubscriptionBroadcaster) -> None:
    """Receive loop for one dashboard client."""
    client_id = await broadcaster.connect(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await broadcaster.send_error(client_id, "Invalid JSON")
                continue
            if not isinstance(message, dict):
                await broadcaster.send_error(client_id, "Message must be a JSON object")
                continue
            await broadcaster.handle_message(client_id, message)
    except WebSocketDisconnect:
        await broadcaster.disconnect(client_id)
    except Exception as e:
        logger.error(f"WebSocket error for {client_id}: {e}")
        await broadcaster.disconnect(client_id)
