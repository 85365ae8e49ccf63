"""
Deploy Monitor - Analytics Engine
=================================

Recomputes a point-in-time snapshot over the full run history after every
completed run: success rates, bottleneck rankings and anomaly flags.

All percentages and statistics are rounded to two decimals.
"""

import logging
import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import Field

from deploy_monitor.core.clock import Clock, utc_now
from deploy_monitor.core.models import RunStatus, StageStatus, TriggerType
from deploy_monitor.core.schemas import PipelineRun, RecordSchema
from deploy_monitor.core.storage import PersistenceStore

logger = logging.getLogger(__name__)

ROLLING_WINDOWS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

TOP_N = 5

# Metric keys that carry times rather than measurements
IGNORED_METRIC_KEYS = frozenset({"timestamp", "recordedAt", "generatedAt"})


# ==========================================================================
# Snapshot Models
# ==========================================================================

class RunTotals(RecordSchema):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    timed_out_runs: int = 0
    running_runs: int = 0


class SuccessRate(RecordSchema):
    success_rate: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    total_runs: int = 0


class SuccessMetrics(RecordSchema):
    overall: SuccessRate = Field(default_factory=SuccessRate)
    rolling: dict[str, SuccessRate] = Field(default_factory=dict)
    by_trigger: dict[str, SuccessRate] = Field(default_factory=dict)


class StageTiming(RecordSchema):
    name: str
    average_duration: float
    max_duration: int
    run_count: int


class StageFailureCount(RecordSchema):
    name: str
    failure_count: int


class Bottlenecks(RecordSchema):
    slowest_stages: list[StageTiming] = Field(default_factory=list)
    frequent_failures: list[StageFailureCount] = Field(default_factory=list)
    average_pipeline_duration: float = 0.0


class DurationAnomaly(RecordSchema):
    run_id: str
    duration: int
    deviation: float


class DurationAnomalies(RecordSchema):
    mean: float = 0.0
    standard_deviation: float = 0.0
    threshold: Optional[float] = None
    anomalies: list[DurationAnomaly] = Field(default_factory=list)


class MetricAnomaly(RecordSchema):
    run_id: str
    metric: str
    value: float
    baseline: float
    threshold: float


class Anomalies(RecordSchema):
    pipeline_duration: DurationAnomalies = Field(default_factory=DurationAnomalies)
    metric_anomalies: list[MetricAnomaly] = Field(default_factory=list)


class LatestRunSummary(RecordSchema):
    id: str
    status: RunStatus
    success: bool
    duration: Optional[int]
    completed_at: Optional[datetime]


class AnalyticsSnapshot(RecordSchema):
    generated_at: datetime
    totals: RunTotals
    success_metrics: SuccessMetrics
    bottlenecks: Bottlenecks
    anomalies: Anomalies
    latest_run: Optional[LatestRunSummary] = None

    def aggregates(self) -> dict[str, Any]:
        """The "current aggregate" record derived from this snapshot."""
        record = self.to_record()
        return {
            "lastUpdated": record["generatedAt"],
            "successMetrics": record["successMetrics"],
            "bottlenecks": record["bottlenecks"],
            "anomalies": record["anomalies"],
        }


# ==========================================================================
# Statistics
# ==========================================================================

def average(values: list[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def population_std(values: list[float]) -> float:
    if len(values) <= 1:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return round(math.sqrt(variance), 2)


def percentage(part: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(part / total * 100, 2)


def success_rate(runs: Iterable[PipelineRun]) -> SuccessRate:
    runs = list(runs)
    successes = sum(1 for run in runs if run.success)
    return SuccessRate(
        success_rate=percentage(successes, len(runs)),
        success_count=successes,
        failure_count=len(runs) - successes,
        total_runs=len(runs),
    )


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


# ==========================================================================
# Engine
# ==========================================================================

class AnalyticsEngine:
    """Computes and persists analytics snapshots."""

    def __init__(
        self,
        store: PersistenceStore,
        *,
        snapshot_retention: int = 50,
        std_dev_threshold: float = 2.0,
        ratio_multiplier: float = 1.5,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.snapshot_retention = snapshot_retention
        self.std_dev_threshold = std_dev_threshold
        self.ratio_multiplier = ratio_multiplier
        self.clock = clock

    async def update_after_run(self, latest_run: Optional[PipelineRun] = None) -> AnalyticsSnapshot:
        """
        Recompute the snapshot, append it to history and overwrite the current aggregate.

        Args:
            latest_run: Run whose completion triggered the update, summarised in the snapshot

        Returns:
            The new snapshot
        """
        snapshot = await self.generate_snapshot(latest_run)
        await self.store.save_snapshot(snapshot.to_record(), limit=self.snapshot_retention)
        await self.store.save_aggregates(snapshot.aggregates())
        logger.info(
            f"Analytics snapshot updated: {snapshot.totals.total_runs} runs, "
            f"{len(snapshot.anomalies.pipeline_duration.anomalies)} duration anomalies"
        )
        return snapshot

    async def generate_snapshot(self, latest_run: Optional[PipelineRun] = None) -> AnalyticsSnapshot:
        """Compute a snapshot from storage without persisting it."""
        runs = await self.store.list_runs()
        metrics_by_run = await self.store.get_all_metrics()
        return self.compute_snapshot(runs, metrics_by_run, latest_run)

    def compute_snapshot(
        self,
        runs: list[PipelineRun],
        metrics_by_run: Mapping[str, Mapping[str, Any]],
        latest_run: Optional[PipelineRun] = None,
    ) -> AnalyticsSnapshot:
        now = self.clock()
        return AnalyticsSnapshot(
            generated_at=now,
            totals=self.compute_totals(runs),
            success_metrics=self.compute_success_metrics(runs, now),
            bottlenecks=self.compute_bottlenecks(runs),
            anomalies=Anomalies(
                pipeline_duration=self.detect_duration_anomalies(runs),
                metric_anomalies=self.detect_metric_anomalies(metrics_by_run),
            ),
            latest_run=self._summarise(latest_run) if latest_run else None,
        )

    async def get_current_aggregates(self) -> Optional[dict[str, Any]]:
        return await self.store.get_aggregates()

    async def get_snapshots(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        return await self.store.list_snapshots(limit)

    # ==========================================================================
    # Success Metrics
    # ==========================================================================

    @staticmethod
    def compute_totals(runs: list[PipelineRun]) -> RunTotals:
        return RunTotals(
            total_runs=len(runs),
            successful_runs=sum(1 for run in runs if run.success),
            failed_runs=sum(1 for run in runs if run.status is RunStatus.FAILED),
            timed_out_runs=sum(1 for run in runs if run.status is RunStatus.TIMEOUT),
            running_runs=sum(1 for run in runs if run.status is RunStatus.RUNNING),
        )

    @staticmethod
    def compute_success_metrics(runs: list[PipelineRun], now: datetime) -> SuccessMetrics:
        rolling = {
            label: success_rate(run for run in runs if run.start_time >= now - window)
            for label, window in ROLLING_WINDOWS.items()
        }

        by_trigger: dict[str, list[PipelineRun]] = defaultdict(list)
        for run in runs:
            by_trigger[run.trigger.type.value].append(run)

        return SuccessMetrics(
            overall=success_rate(runs),
            rolling=rolling,
            by_trigger={
                trigger.value: success_rate(by_trigger[trigger.value])
                for trigger in TriggerType
                if trigger.value in by_trigger
            },
        )

    # ==========================================================================
    # Bottlenecks
    # ==========================================================================

    @staticmethod
    def compute_bottlenecks(runs: list[PipelineRun]) -> Bottlenecks:
        durations: dict[str, list[int]] = defaultdict(list)
        failures: dict[str, int] = defaultdict(int)

        for run in runs:
            for stage in run.stages:
                if stage.duration is not None and stage.duration >= 0:
                    durations[stage.name].append(stage.duration)
                if stage.status is StageStatus.FAILED:
                    failures[stage.name] += 1

        slowest = sorted(
            (
                StageTiming(
                    name=name,
                    average_duration=average(values),
                    max_duration=max(values),
                    run_count=len(values),
                )
                for name, values in durations.items()
            ),
            key=lambda timing: timing.average_duration,
            reverse=True,
        )[:TOP_N]

        frequent = sorted(
            (StageFailureCount(name=name, failure_count=count) for name, count in failures.items()),
            key=lambda entry: entry.failure_count,
            reverse=True,
        )[:TOP_N]

        run_durations = [run.duration for run in runs if run.duration is not None]
        return Bottlenecks(
            slowest_stages=slowest,
            frequent_failures=frequent,
            average_pipeline_duration=average(run_durations),
        )

    # ==========================================================================
    # Anomaly Detection
    # ==========================================================================

    def detect_duration_anomalies(self, runs: list[PipelineRun]) -> DurationAnomalies:
        """
        Flag runs whose duration reaches the anomaly threshold.

        The threshold is the lower of ``mean + k * std`` and ``mean * m``,
        falling back to the deviation bound when the mean is zero. A history
        with zero deviation has no anomalies.
        """
        entries = [(run.id, run.duration) for run in runs if run.duration is not None and run.duration >= 0]
        if not entries:
            return DurationAnomalies()

        values = [duration for _, duration in entries]
        mean = average(values)
        std = population_std(values)
        if std == 0:
            return DurationAnomalies(mean=mean, standard_deviation=std)

        std_bound = mean + std * self.std_dev_threshold
        ratio_bound = std_bound if mean == 0 else mean * self.ratio_multiplier
        threshold = min(std_bound, ratio_bound)

        return DurationAnomalies(
            mean=mean,
            standard_deviation=std,
            threshold=round(threshold, 2),
            anomalies=[
                DurationAnomaly(run_id=run_id, duration=duration, deviation=round(duration - mean, 2))
                for run_id, duration in entries
                if duration >= threshold
            ],
        )

    def detect_metric_anomalies(self, metrics_by_run: Mapping[str, Mapping[str, Any]]) -> list[MetricAnomaly]:
        """Flag individual metric values above ``max(baseline * m, baseline + k * std)``."""
        samples: dict[str, list[tuple[str, float]]] = defaultdict(list)
        for run_id, metrics in metrics_by_run.items():
            if not isinstance(metrics, Mapping):
                continue
            for key, value in metrics.items():
                if key in IGNORED_METRIC_KEYS or not _is_number(value):
                    continue
                samples[key].append((run_id, value))

        anomalies = []
        for key, records in samples.items():
            values = [value for _, value in records]
            baseline = average(values)
            std = population_std(values)
            if len(values) < 2 or (baseline == 0 and std == 0):
                continue

            threshold = max(baseline * self.ratio_multiplier, baseline + std * self.std_dev_threshold)
            for run_id, value in records:
                if value > threshold:
                    anomalies.append(MetricAnomaly(
                        run_id=run_id,
                        metric=key,
                        value=value,
                        baseline=baseline,
                        threshold=round(threshold, 2),
                    ))
        return anomalies

    @staticmethod
    def _summarise(run: PipelineRun) -> LatestRunSummary:
        return LatestRunSummary(
            id=run.id,
            status=run.status,
            success=run.success,
            duration=run.duration,
            completed_at=run.end_time,
        )
