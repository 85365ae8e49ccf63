"""
Alerting
========

Rule evaluation, signature deduplication with cooldowns, alert lifecycle
and notification delivery.
"""

from .config import (
    AlertSettings,
    AlertThresholds,
    AlertTypeSettings,
    CooldownSettings,
    DEFAULT_SEVERITIES,
    EmailChannelSettings,
    NotificationSettings,
    WebhookChannelSettings,
)
from .cooldown import CooldownCache, CooldownEntry, FireDecision
from .manager import AlertManager, alert_signature
from .notifications import (
    ConsoleNotificationChannel,
    DashboardNotificationChannel,
    EmailNotificationChannel,
    NotificationChannel,
    NotificationDispatcher,
    NotificationEvent,
    WebhookNotificationChannel,
)

__all__ = [
    "AlertManager",
    "AlertSettings",
    "AlertThresholds",
    "AlertTypeSettings",
    "ConsoleNotificationChannel",
    "CooldownCache",
    "CooldownEntry",
    "CooldownSettings",
    "DEFAULT_SEVERITIES",
    "DashboardNotificationChannel",
    "EmailChannelSettings",
    "EmailNotificationChannel",
    "FireDecision",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationSettings",
    "WebhookChannelSettings",
    "WebhookNotificationChannel",
    "alert_signature",
]
