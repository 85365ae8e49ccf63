"""
Deploy Monitor - Persistence Store Tests
========================================
"""

from datetime import timedelta

import pytest

from deploy_monitor.core.exceptions import PersistenceError
from deploy_monitor.core.models import AlertType, RunStatus, Severity
from deploy_monitor.core.schemas import Alert, PipelineRun, WebhookRecord
from deploy_monitor.core.storage import PersistenceStore

from fakes import START_TIME, make_trigger


def make_run(index: int, status: RunStatus = RunStatus.COMPLETED, trigger: str = "git") -> PipelineRun:
    return PipelineRun(
        id=f"run_20260101_1200{index:02d}_000000_abcdef{index:02d}",
        trigger=make_trigger(type=trigger),
        status=status,
        start_time=START_TIME + timedelta(seconds=index),
    )


def make_webhook(run_id: str, offset: int = 0) -> WebhookRecord:
    return WebhookRecord.model_validate({
        "runId": run_id,
        "source": "github",
        "destination": "/hooks",
        "response": {"status": 200},
        "timing": {"sent": (START_TIME + timedelta(seconds=offset)).isoformat()},
    })


class TestRuns:
    """Tests for run documents."""

    async def test_save_and_load(self, store):
        run = make_run(1)

        await store.save_run(run)

        assert await store.get_run(run.id) == run
        assert await store.get_run("missing") is None

    async def test_save_is_an_upsert(self, store):
        run = make_run(1, status=RunStatus.RUNNING)
        await store.save_run(run)

        run.status = RunStatus.FAILED
        await store.save_run(run)

        assert (await store.get_run(run.id)).status is RunStatus.FAILED
        assert len(await store.list_runs()) == 1

    async def test_list_filters_and_order(self, store):
        for index, (status, trigger) in enumerate([
            (RunStatus.COMPLETED, "git"),
            (RunStatus.FAILED, "manual"),
            (RunStatus.COMPLETED, "manual"),
        ]):
            await store.save_run(make_run(index, status, trigger))

        newest_first = [run.id for run in await store.list_runs()]
        assert newest_first == [make_run(2).id, make_run(1).id, make_run(0).id]
        assert [run.id for run in await store.list_runs(status=RunStatus.FAILED)] == [make_run(1).id]
        assert len(await store.list_runs(trigger_type="manual")) == 2
        assert len(await store.list_runs(limit=1)) == 1

    async def test_metrics_saved_with_run(self, store):
        run = make_run(1)

        await store.save_run(run, metrics={"buildTime": 1200})

        metrics = await store.get_metrics(run.id)
        assert metrics["buildTime"] == 1200
        assert "timestamp" in metrics
        assert set(await store.get_all_metrics()) == {run.id}

    async def test_save_metrics_replaces_record(self, store):
        await store.save_metrics("run_a", {"buildTime": 100})
        await store.save_metrics("run_a", {"buildTime": 200})

        metrics = await store.get_metrics("run_a")
        assert metrics["buildTime"] == 200
        assert len(await store.get_all_metrics()) == 1


class TestWebhookRecords:
    """Tests for webhook records."""

    async def test_records_are_grouped_by_run(self, store):
        await store.save_webhook_record(make_webhook("run_a", 0))
        await store.save_webhook_record(make_webhook("run_a", 1))
        other = make_webhook("run_b", 2)
        await store.save_webhook_record(other)

        assert await store.count_webhook_records("run_a") == 2
        assert await store.get_webhook_record(other.id) == other
        assert len(await store.list_webhook_records()) == 3
        assert [record.run_id for record in await store.list_webhook_records("run_b")] == ["run_b"]


class TestAlerts:
    """Tests for alert state and settings."""

    def make_alert(self, signature: str, offset: int = 0) -> Alert:
        seen = START_TIME + timedelta(seconds=offset)
        return Alert(
            signature=signature,
            type=AlertType.WEBHOOK_ERROR,
            severity=Severity.ERROR,
            first_seen=seen,
            last_seen=seen,
            last_notified_at=seen,
        )

    async def test_active_filter(self, store):
        await store.save_alert(self.make_alert("one"), active=True)
        await store.save_alert(self.make_alert("two", 5), active=False)

        assert [alert.signature for alert in await store.list_alerts(active=True)] == ["one"]
        assert [alert.signature for alert in await store.list_alerts()] == ["two", "one"]

    async def test_delete_only_inactive_by_default(self, store):
        await store.save_alert(self.make_alert("one"), active=True)
        await store.save_alert(self.make_alert("two"), active=False)

        removed = await store.delete_alerts(START_TIME + timedelta(days=1))

        assert removed == 1
        assert [alert.signature for alert in await store.list_alerts()] == ["one"]

    async def test_settings_document(self, store):
        assert await store.load_alert_settings() is None

        await store.save_alert_settings({"thresholds": {"response_time_ms": 100}})

        assert await store.load_alert_settings() == {"thresholds": {"response_time_ms": 100}}


class TestRetention:
    """Tests for history trimming."""

    async def test_cleanup_keeps_newest_and_running(self, store):
        await store.save_run(make_run(0, RunStatus.RUNNING), metrics=None)
        for index in range(1, 4):
            await store.save_run(make_run(index), metrics={"buildTime": index})
        for offset in range(4):
            await store.save_webhook_record(make_webhook(make_run(offset).id, offset))

        removed = await store.cleanup(keep_count=2)

        assert removed == {"runs": 1, "webhooks": 2}
        remaining = {run.id for run in await store.list_runs()}
        assert remaining == {make_run(0).id, make_run(2).id, make_run(3).id}
        assert await store.get_metrics(make_run(1).id) is None


class TestLifecycle:
    """Tests for connection handling."""

    async def test_closed_store_raises_persistence_error(self):
        store = PersistenceStore("sqlite+aiosqlite:///:memory:")
        await store.initialize()
        assert await store.ping() is True

        await store.close()

        assert await store.ping() is False
        with pytest.raises(PersistenceError):
            await store.save_run(make_run(1))

    async def test_file_database_directory_is_created(self, tmp_path):
        database = tmp_path / "nested" / "monitor.db"
        store = PersistenceStore(f"sqlite+aiosqlite:///{database}")

        await store.initialize()
        try:
            await store.save_run(make_run(1))
            assert database.exists()
        finally:
            await store.close()
