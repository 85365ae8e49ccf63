"""
Deploy Monitor - Core Package
=============================

Monitoring engine: storage, run tracking, alerting, analytics and fan-out.
"""

from deploy_monitor.core.config import settings
from deploy_monitor.core.database import Base

__all__ = ["Base", "settings"]
