"""
Job Scheduler - recurring named jobs on asyncio timers.

Each job runs in its own task. A failing tick is logged and counted but
never stops the job's future ticks or any other job.

Usage::

    scheduler = JobScheduler("monitoring")
    scheduler.schedule("analytics_report", engine.update_after_run, interval_seconds=3600)
    await scheduler.run_now("analytics_report")
    await scheduler.cancel_all()
"""

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from deploy_monitor.core.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Any]


@dataclass
class ScheduledJob:
    """Registered recurring job and its run statistics."""
    name: str
    handler: JobHandler
    interval_seconds: float
    immediate: bool = False
    meta: dict[str, Any] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None
    runs: int = 0
    failures: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "intervalSeconds": self.interval_seconds,
            "immediate": self.immediate,
            "meta": self.meta,
            "runs": self.runs,
            "failures": self.failures,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastError": self.last_error,
        }


class JobScheduler:
    """Generic recurring-task runner."""

    def __init__(self, name: str = "scheduler"):
        self.name = name
        self._jobs: dict[str, ScheduledJob] = {}

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    def schedule(
        self,
        name: str,
        handler: JobHandler,
        *,
        interval_seconds: float,
        immediate: bool = False,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> ScheduledJob:
        """
        Register a recurring job, replacing any job with the same name.

        Must be called from a running event loop.

        Args:
            name: Unique job name
            handler: Sync or async callable taking no arguments
            interval_seconds: Delay between ticks
            immediate: Run the first tick right away instead of after one interval
            meta: Free-form metadata kept with the job

        Returns:
            The registered job
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Job name must be a non-empty string")
        if not callable(handler):
            raise ValidationError(f"Job {name} handler must be callable")
        if interval_seconds is None or interval_seconds <= 0:
            raise ValidationError(f"Job {name} interval must be a positive number of seconds")

        self.cancel(name)

        job = ScheduledJob(
            name=name,
            handler=handler,
            interval_seconds=float(interval_seconds),
            immediate=immediate,
            meta=dict(meta or {}),
        )
        job.task = asyncio.create_task(self._run_loop(job), name=f"{self.name}:{name}")
        self._jobs[name] = job

        logger.info(f"[{self.name}] Scheduled job '{name}' every {job.interval_seconds}s")
        return job

    async def _run_loop(self, job: ScheduledJob) -> None:
        if job.immediate:
            await self._tick(job)
        while True:
            await asyncio.sleep(job.interval_seconds)
            await self._tick(job)

    async def _tick(self, job: ScheduledJob) -> None:
        job.last_run_at = datetime.now(timezone.utc)
        try:
            await self._invoke(job)
            job.runs += 1
            job.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.error(f"[{self.name}] Job '{job.name}' failed: {e}", exc_info=True)

    @staticmethod
    async def _invoke(job: ScheduledJob) -> Any:
        result = job.handler()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run_now(self, name: str) -> Any:
        """Run a job once, outside its schedule. Errors propagate."""
        job = self._jobs.get(name)
        if job is None:
            raise NotFoundError("job", name)
        job.last_run_at = datetime.now(timezone.utc)
        result = await self._invoke(job)
        job.runs += 1
        return result

    def cancel(self, name: str) -> bool:
        job = self._jobs.pop(name, None)
        if job is None:
            return False
        if job.task and not job.task.done():
            job.task.cancel()
        logger.info(f"[{self.name}] Cancelled job '{name}'")
        return True

    async def cancel_all(self) -> None:
        """Cancel every job and wait for the tasks to finish unwinding."""
        jobs = list(self._jobs.values())
        self._jobs.clear()
        tasks = [job.task for job in jobs if job.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if jobs:
            logger.info(f"[{self.name}] Cancelled {len(jobs)} jobs")

    def load_from_config(
        self,
        configs: Iterable[Mapping[str, Any]],
        handler_factory: Callable[[Mapping[str, Any]], Optional[JobHandler]],
    ) -> list[ScheduledJob]:
        """
        Register jobs described by configuration entries.

        Entries need ``name`` and ``interval_seconds``; ``immediate`` and
        ``meta`` are optional. Entries with ``enabled: false`` or for which
        the factory returns no handler are skipped.
        """
        scheduled = []
        for config in configs:
            if config.get("enabled", True) is False:
                continue
            handler = handler_factory(config)
            if handler is None:
                logger.warning(f"[{self.name}] No handler for job '{config.get('name')}', skipping")
                continue
            scheduled.append(self.schedule(
                config["name"],
                handler,
                interval_seconds=config["interval_seconds"],
                immediate=config.get("immediate", False),
                meta=config.get("meta"),
            ))
        return scheduled
