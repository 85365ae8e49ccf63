"""
Fire-and-forget task tracking.

Notification dispatch and broadcast fan-out must never delay or fail the
state change that triggered them, so they run as tracked background tasks.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Holds references to spawned tasks until they finish."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, label), name=f"{self.name}:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background task {self.name}:{label} failed: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait until every spawned task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

