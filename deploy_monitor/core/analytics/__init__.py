"""Run-history analytics: success rates, bottlenecks and anomaly detection."""

from .engine import AnalyticsEngine, AnalyticsSnapshot

__all__ = ["AnalyticsEngine", "AnalyticsSnapshot"]
