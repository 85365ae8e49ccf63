"""
Deploy Monitor - Job Scheduler Tests
====================================
"""

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from deploy_monitor.core.exceptions import NotFoundError, ValidationError
from deploy_monitor.core.scheduler import JobScheduler


@pytest_asyncio.fixture
async def scheduler() -> AsyncGenerator[JobScheduler, None]:
    scheduler = JobScheduler("test")
    yield scheduler
    await scheduler.cancel_all()


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Poll until ``predicate`` holds or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


class TestSchedule:
    """Tests for job registration."""

    async def test_invalid_arguments(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.schedule("", lambda: None, interval_seconds=1)
        with pytest.raises(ValidationError):
            scheduler.schedule("job", "not callable", interval_seconds=1)
        with pytest.raises(ValidationError):
            scheduler.schedule("job", lambda: None, interval_seconds=0)
        assert scheduler.job_names == []

    async def test_immediate_job_runs_right_away(self, scheduler):
        calls = []
        job = scheduler.schedule("tick", lambda: calls.append(1), interval_seconds=60, immediate=True)

        await wait_for(lambda: job.runs == 1)

        assert calls == [1]

    async def test_job_repeats_on_interval(self, scheduler):
        calls = []

        async def handler():
            calls.append(1)

        job = scheduler.schedule("tick", handler, interval_seconds=0.01)

        await wait_for(lambda: job.runs >= 3)

        assert len(calls) >= 3

    async def test_failing_tick_does_not_stop_the_job(self, scheduler):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first tick fails")

        job = scheduler.schedule("flaky", flaky, interval_seconds=0.01, immediate=True)

        await wait_for(lambda: job.runs >= 1)

        assert job.failures == 1
        assert job.last_error is None
        assert not job.task.done()

    async def test_rescheduling_replaces_the_job(self, scheduler):
        first = scheduler.schedule("tick", lambda: None, interval_seconds=60)
        second = scheduler.schedule("tick", lambda: None, interval_seconds=30)

        await asyncio.sleep(0)

        assert first.task.cancelled() or first.task.cancelling()
        assert scheduler.get_job("tick") is second
        assert scheduler.job_names == ["tick"]


# ==========================================================================
# Manual Runs and Cancellation
# ==========================================================================

class TestRunNow:
    async def test_run_now_returns_result(self, scheduler):
        async def report():
            return {"generated": True}

        scheduler.schedule("report", report, interval_seconds=3600)

        assert await scheduler.run_now("report") == {"generated": True}
        assert scheduler.get_job("report").runs == 1

    async def test_run_now_propagates_errors(self, scheduler):
        def broken():
            raise RuntimeError("boom")

        scheduler.schedule("broken", broken, interval_seconds=3600)

        with pytest.raises(RuntimeError, match="boom"):
            await scheduler.run_now("broken")

    async def test_unknown_job(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.run_now("missing")


class TestCancel:
    async def test_cancel_single_job(self, scheduler):
        job = scheduler.schedule("tick", lambda: None, interval_seconds=60)

        assert scheduler.cancel("tick") is True
        assert scheduler.cancel("tick") is False

        with pytest.raises(asyncio.CancelledError):
            await job.task

    async def test_cancel_all(self, scheduler):
        jobs = [scheduler.schedule(name, lambda: None, interval_seconds=60) for name in ("a", "b")]

        await scheduler.cancel_all()

        assert scheduler.job_names == []
        assert all(job.task.done() for job in jobs)


class TestConfiguration:
    async def test_load_from_config(self, scheduler):
        handlers = {"report": lambda: "report"}
        configs = [
            {"name": "report", "interval_seconds": 3600, "meta": {"owner": "analytics"}},
            {"name": "cleanup", "interval_seconds": 60},
            {"name": "report_disabled", "interval_seconds": 60, "enabled": False},
        ]

        scheduled = scheduler.load_from_config(configs, lambda config: handlers.get(config["name"]))

        assert [job.name for job in scheduled] == ["report"]
        assert scheduler.job_names == ["report"]
        assert scheduled[0].to_dict() == {
            "name": "report",
            "intervalSeconds": 3600.0,
            "immediate": False,
            "meta": {"owner": "analytics"},
            "runs": 0,
            "failures": 0,
            "lastRunAt": None,
            "lastError": None,
        }
