"""
Deploy Monitor - Error Taxonomy
===============================

Every error raised by the monitoring core derives from MonitorError.
"""

from typing import Optional


class MonitorError(Exception):
    """Base class for monitoring engine errors."""


class ValidationError(MonitorError):
    """Malformed trigger, stage, metrics or configuration input."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message}: {'; '.join(self.errors)}"


class InvalidTransitionError(ValidationError):
    """Mutation attempted on a pipeline run that already left the running state."""


class NotFoundError(MonitorError):
    """Operation referenced an unknown run, alert or job."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class PersistenceError(MonitorError):
    """Storage read or write failed."""


class ChannelDeliveryError(MonitorError):
    """A notification channel failed to deliver."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"[{channel}] {message}")
        self.channel = channel


class ConfigurationError(MonitorError):
    """Missing or invalid configuration for a collaborator."""

    def __init__(self, message: str, channel: Optional[str] = None):
        super().__init__(message)
        self.channel = channel
