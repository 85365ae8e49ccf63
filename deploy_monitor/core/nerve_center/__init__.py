"""
Deploy Monitor Nerve Center
===========================

Real-time event fan-out to dashboard clients.
"""

from .events import ALL_EVENTS, EventType, WSMessage, WSMessageType
from .websocket_hub import (
    ClientConnection,
    SubscriptionBroadcaster,
    websocket_endpoint,
)

__all__ = [
    "ALL_EVENTS",
    "ClientConnection",
    "EventType",
    "SubscriptionBroadcaster",
    "WSMessage",
    "WSMessageType",
    "websocket_endpoint",
]
