"""
Unit tests for EngineMetrics.
"""

from migrator.engine import MigrationEngine
from migrator.metrics import EngineMetrics
from migrator.models import MigrationRequest


def metric_names(reader):
    data = reader.get_metrics_data()
    names = set()
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                names.add(metric.name)
    return names


class TestSnapshot:
    def test_counts(self):
        metrics = EngineMetrics(enable_metrics=False)
        metrics.record_started("blue_green")
        metrics.record_started("canary")
        metrics.record_completed("blue_green", duration_seconds=12.5)
        metrics.record_failed("canary", "testing", 3.0)

        snapshot = metrics.snapshot()

        assert snapshot.started == 2
        assert snapshot.completed == 1
        assert snapshot.failed == 1
        assert snapshot.active == 0
        assert snapshot.failures_by_stage == {"testing": 1}
        assert snapshot.durations == [12.5, 3.0]

    def test_not_in_flight_failures_leave_active_alone(self):
        metrics = EngineMetrics(enable_metrics=False)
        metrics.record_started("blue_green")
        metrics.record_failed("blue_green", "pending", in_flight=False)

        assert metrics.snapshot().active == 1

    def test_rollbacks(self):
        metrics = EngineMetrics(enable_metrics=False)
        metrics.record_started("rolling")
        metrics.record_rolled_back("rolling", 8.0)
        metrics.record_rollback_failure("rolling")
        metrics.record_batch_halted("rolling")

        snapshot = metrics.snapshot()
        assert snapshot.rolled_back == 1
        assert snapshot.rollback_failures == 1
        assert snapshot.batches_halted == 1
        assert snapshot.active == 0

    def test_to_dict(self):
        metrics = EngineMetrics(enable_metrics=False)
        metrics.record_started("shadow")
        assert metrics.snapshot().to_dict()["started"] == 1


class TestOpenTelemetry:
    def test_instruments_report_to_meter(self, metric_reader):
        metrics = EngineMetrics()
        metrics.record_started("blue_green")
        metrics.record_completed("blue_green", duration_seconds=4.0)

        names = metric_names(metric_reader)

        assert "migrator.migrations.started" in names
        assert "migrator.migrations.completed" in names
        assert "migrator.migration.duration" in names

    async def test_engine_reports_migrations(self, metric_reader, collaborators, fast_config):
        engine = MigrationEngine(
            **collaborators.engine_kwargs(), config=fast_config, enable_tracing=False
        )
        plan_id = await engine.submit(MigrationRequest("p1", "v2"))
        await engine.wait(plan_id, timeout=5.0)
        await engine.shutdown(timeout=5.0)

        assert "migrator.migrations.completed" in metric_names(metric_reader)
        assert engine.metrics.snapshot().completed == 1
