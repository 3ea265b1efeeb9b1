"""
OpenTelemetry metrics for the migration engine.

Metrics Exposed:
    - migrator.migrations.started (Counter): Plans that left PENDING
    - migrator.migrations.completed (Counter): Plans that completed
    - migrator.migrations.failed (Counter): Plans that ended failed
    - migrator.migrations.rolled_back (Counter): Plans that were rolled back
    - migrator.rollbacks.failed (Counter): Rollbacks that themselves failed
    - migrator.batches.halted (Counter): Bulk submissions halted by the failure ceiling
    - migrator.migration.duration (Histogram): Wall time of finished plans
    - migrator.migrations.active (UpDownCounter): Plans currently executing

Counters carry the 'strategy' attribute; failure counters also carry 'stage'.

Alongside the instruments, EngineMetrics keeps in-process counts so tests
and operators can inspect what would be reported via snapshot().

Example:
    >>> metrics = EngineMetrics()
    >>> metrics.record_started("blue_green")
    >>> metrics.record_completed("blue_green", duration_seconds=42.0)
    >>> metrics.snapshot().completed
    1
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics

_meter: Any = None


def _get_meter() -> Any:
    """Get or create the engine's meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("migrator", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the module-level meter.

    Useful for testing to ensure fresh meter state between tests.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class EngineMetricSnapshot:
    """
    Snapshot of the values EngineMetrics has reported.

    Attributes:
        started: Plans started.
        completed: Plans completed.
        failed: Plans that ended failed.
        rolled_back: Plans rolled back.
        rollback_failures: Rollbacks that failed.
        batches_halted: Bulk submissions halted.
        active: Plans currently executing.
        failures_by_stage: Failure counts keyed by stage marker.
        durations: Recorded durations in seconds.
    """

    started: int = 0
    completed: int = 0
    failed: int = 0
    rolled_back: int = 0
    rollback_failures: int = 0
    batches_halted: int = 0
    active: int = 0
    failures_by_stage: dict[str, int] = field(default_factory=dict)
    durations: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "started": self.started,
            "completed": self.completed,
            "failed": self.failed,
            "rolled_back": self.rolled_back,
            "rollback_failures": self.rollback_failures,
            "batches_halted": self.batches_halted,
            "active": self.active,
            "failures_by_stage": dict(self.failures_by_stage),
            "durations": list(self.durations),
        }


@dataclass
class EngineMetrics:
    """
    Container for engine metric instruments.

    Attributes:
        enable_metrics: Whether OpenTelemetry instruments are created (default True).
    """

    enable_metrics: bool = True

    _started_counter: Any = field(default=None, init=False, repr=False)
    _completed_counter: Any = field(default=None, init=False, repr=False)
    _failed_counter: Any = field(default=None, init=False, repr=False)
    _rolled_back_counter: Any = field(default=None, init=False, repr=False)
    _rollback_failures_counter: Any = field(default=None, init=False, repr=False)
    _batches_halted_counter: Any = field(default=None, init=False, repr=False)
    _active_counter: Any = field(default=None, init=False, repr=False)
    _duration_histogram: Any = field(default=None, init=False, repr=False)

    _counts: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _failures_by_stage: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _durations: list[float] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = _get_meter()

        self._started_counter = meter.create_counter(
            name="migrator.migrations.started",
            unit="migrations",
            description="Number of migrations that started executing",
        )
        self._completed_counter = meter.create_counter(
            name="migrator.migrations.completed",
            unit="migrations",
            description="Number of migrations that completed",
        )
        self._failed_counter = meter.create_counter(
            name="migrator.migrations.failed",
            unit="migrations",
            description="Number of migrations that ended failed",
        )
        self._rolled_back_counter = meter.create_counter(
            name="migrator.migrations.rolled_back",
            unit="migrations",
            description="Number of migrations rolled back to their prior state",
        )
        self._rollback_failures_counter = meter.create_counter(
            name="migrator.rollbacks.failed",
            unit="rollbacks",
            description="Number of rollbacks that failed and need manual intervention",
        )
        self._batches_halted_counter = meter.create_counter(
            name="migrator.batches.halted",
            unit="batches",
            description="Number of bulk submissions halted by the failure ceiling",
        )
        self._active_counter = meter.create_up_down_counter(
            name="migrator.migrations.active",
            unit="migrations",
            description="Number of migrations currently executing",
        )
        self._duration_histogram = meter.create_histogram(
            name="migrator.migration.duration",
            unit="s",
            description="Wall time of finished migrations in seconds",
        )

    def _setup_noop(self) -> None:
        self._started_counter = NoOpCounter()
        self._completed_counter = NoOpCounter()
        self._failed_counter = NoOpCounter()
        self._rolled_back_counter = NoOpCounter()
        self._rollback_failures_counter = NoOpCounter()
        self._batches_halted_counter = NoOpCounter()
        self._active_counter = NoOpCounter()
        self._duration_histogram = NoOpHistogram()

    def _bump(self, key: str, amount: int = 1) -> None:
        self._counts[key] = self._counts.get(key, 0) + amount

    def record_started(self, strategy: str) -> None:
        attributes = {"strategy": strategy}
        self._started_counter.add(1, attributes)
        self._active_counter.add(1, attributes)
        self._bump("started")
        self._bump("active")

    def _finish(self, strategy: str, duration_seconds: float | None, outcome: str) -> None:
        attributes = {"strategy": strategy}
        self._active_counter.add(-1, attributes)
        self._bump("active", -1)
        if duration_seconds is not None:
            self._duration_histogram.record(
                duration_seconds, {"strategy": strategy, "outcome": outcome}
            )
            self._durations.append(duration_seconds)

    def record_completed(self, strategy: str, duration_seconds: float | None = None) -> None:
        self._completed_counter.add(1, {"strategy": strategy})
        self._bump("completed")
        self._finish(strategy, duration_seconds, "completed")

    def record_failed(
        self,
        strategy: str,
        stage: str,
        duration_seconds: float | None = None,
        *,
        in_flight: bool = True,
    ) -> None:
        """
        Record a plan that ended failed.

        Args:
            strategy: Plan strategy.
            stage: Stage marker of the failure.
            duration_seconds: Wall time, if known.
            in_flight: False for plans that were not executing
                (cancelled while pending, never dispatched).
        """
        self._failed_counter.add(1, {"strategy": strategy, "stage": stage})
        self._bump("failed")
        self._failures_by_stage[stage] = self._failures_by_stage.get(stage, 0) + 1
        if in_flight:
            self._finish(strategy, duration_seconds, "failed")

    def record_rolled_back(
        self,
        strategy: str,
        duration_seconds: float | None = None,
        *,
        in_flight: bool = True,
    ) -> None:
        self._rolled_back_counter.add(1, {"strategy": strategy})
        self._bump("rolled_back")
        if in_flight:
            self._finish(strategy, duration_seconds, "rolled_back")

    def record_rollback_failure(self, strategy: str) -> None:
        self._rollback_failures_counter.add(1, {"strategy": strategy})
        self._bump("rollback_failures")

    def record_batch_halted(self, strategy: str) -> None:
        self._batches_halted_counter.add(1, {"strategy": strategy})
        self._bump("batches_halted")

    def snapshot(self) -> EngineMetricSnapshot:
        """Return the values recorded so far."""
        return EngineMetricSnapshot(
            started=self._counts.get("started", 0),
            completed=self._counts.get("completed", 0),
            failed=self._counts.get("failed", 0),
            rolled_back=self._counts.get("rolled_back", 0),
            rollback_failures=self._counts.get("rollback_failures", 0),
            batches_halted=self._counts.get("batches_halted", 0),
            active=self._counts.get("active", 0),
            failures_by_stage=dict(self._failures_by_stage),
            durations=list(self._durations),
        )


__all__ = [
    "EngineMetrics",
    "EngineMetricSnapshot",
    "reset_meter",
]
