"""
Deploy Monitor - API Dependencies
=================================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends, Request

from deploy_monitor.core.service import MonitoringService


def get_service(request: Request) -> MonitoringService:
    """The monitoring service attached to the running application."""
    return request.app.state.service


Service = Annotated[MonitoringService, Depends(get_service)]
