"""
Deploy Monitor Nerve Center - Event Catalogue
=============================================

Broadcast event types and the websocket message envelope.
Every message on the wire is ``{type, data, timestamp}``.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from deploy_monitor.core.clock import utc_now


# ==========================================================================
# Broadcast Events
# ==========================================================================

class EventType(str, Enum):
    """Events fanned out to subscribed dashboard clients."""
    # Pipeline
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_UPDATED = "pipeline_updated"
    PIPELINE_COMPLETED = "pipeline_completed"
    WEBHOOK_RECORDED = "webhook_recorded"
    METRICS_UPDATED = "metrics_updated"
    ANALYTICS_UPDATED = "analytics_updated"

    # Alerts
    ALERT_GENERATED = "alert_generated"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_RESOLVED = "alert_resolved"


# Subscribing to this receives every broadcast
ALL_EVENTS = "all"


# ==========================================================================
# WebSocket Message Types
# ==========================================================================

class WSMessageType(str, Enum):
    """WebSocket message types"""
    # Client -> Server
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PING = "ping"
    GET_STATUS = "get_status"
    GET_RECENT_RUNS = "get_recent_runs"

    # Server -> Client
    WELCOME = "welcome"
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    UNSUBSCRIPTION_CONFIRMED = "unsubscription_confirmed"
    PONG = "pong"
    STATUS_RESPONSE = "status_response"
    RECENT_RUNS_RESPONSE = "recent_runs_response"
    ERROR = "error"


@dataclass
class WSMessage:
    """WebSocket message structure"""
    type: str
    data: Any = None
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value if isinstance(self.type, Enum) else self.type,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)
