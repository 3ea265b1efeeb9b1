"""
Unit tests for Capabilities: collaborator calls, retries and health watches.
"""

import asyncio

import pytest

from migrator.capabilities import Capabilities, ExecutionContext
from migrator.exceptions import (
    CancellationRequested,
    CollaboratorUnavailableError,
    ExecutionFailure,
)
from migrator.models import Environment, HealthReport, MigrationStatus
from tests.fixtures import FakeCollaborators, make_plan


@pytest.fixture
def caps(collaborators: FakeCollaborators) -> Capabilities:
    return Capabilities(
        collaborators.provisioner,
        collaborators.replicator,
        collaborators.router,
        collaborators.deployer,
        collaborators.health_monitor,
        collaborators.backup_store,
        enable_tracing=False,
    )


@pytest.fixture
def ctx(fast_config) -> ExecutionContext:
    context = ExecutionContext(plan=make_plan(), config=fast_config)
    context.blue = Environment("p1-blue", "p1", "v1")
    context.green = Environment("p1-green-1", "p1", "v2")
    return context


class TestExecutionContext:
    def test_require_green_without_environment(self, fast_config):
        ctx = ExecutionContext(plan=make_plan(), config=fast_config)
        ctx.status = MigrationStatus.MIGRATING_DATA
        with pytest.raises(ExecutionFailure) as exc_info:
            ctx.require_green()
        assert exc_info.value.stage == "migrating_data"

    def test_handler_uses_config_retry(self, fast_config):
        ctx = ExecutionContext(plan=make_plan(), config=fast_config)
        assert ctx.handler.retry_config is fast_config.retry

    async def test_not_cancelled_by_default(self, ctx):
        await ctx.raise_if_cancelled()

    async def test_persisted_cancel_sets_event(self, fast_config):
        async def flagged():
            return True

        ctx = ExecutionContext(plan=make_plan(), config=fast_config, cancel_source=flagged)
        ctx.status = MigrationStatus.TESTING
        with pytest.raises(CancellationRequested) as exc_info:
            await ctx.raise_if_cancelled()
        assert exc_info.value.stage == "testing"
        assert ctx.cancel_event.is_set()


class TestCollaboratorCalls:
    async def test_provision_retries_transient_failures(self, caps, ctx, collaborators):
        collaborators.provisioner.transient_create_failures = 2
        env = await caps.provision(ctx)
        assert env.version == "v2"
        assert collaborators.provisioner.create_attempts == 3

    async def test_provision_gives_up_after_retry_budget(self, caps, ctx, collaborators):
        collaborators.provisioner.transient_create_failures = 5
        with pytest.raises(CollaboratorUnavailableError):
            await caps.provision(ctx)
        assert collaborators.provisioner.create_attempts == 3

    async def test_bulk_copy_blue_to_green(self, caps, ctx, collaborators):
        await caps.bulk_copy(ctx)
        assert collaborators.replicator.copies == [(ctx.blue, ctx.green)]

    async def test_transform_data_uses_plan_versions(self, caps, ctx, collaborators):
        await caps.transform_data(ctx)
        assert collaborators.deployer.data_changes == [("p1-green-1", "v1", "v2")]

    async def test_refused_switch_fails_step(self, caps, ctx, collaborators):
        collaborators.router.refuse_switch.add("p1")
        ctx.status = MigrationStatus.SWITCHING_TRAFFIC
        with pytest.raises(ExecutionFailure, match="refused switch") as exc_info:
            await caps.switch(ctx)
        assert exc_info.value.stage == "switching_traffic"

    async def test_traffic_calls(self, caps, ctx, collaborators):
        await caps.pause_writes(ctx)
        await caps.shift(ctx, 25)
        await caps.mirror(ctx, True)
        await caps.resume_writes(ctx)
        assert collaborators.router.calls == [
            ("pause_writes", "p1-blue"),
            ("shift", "p1-blue", "p1-green-1", 25),
            ("mirror", "p1-blue", "p1-green-1", True),
            ("resume_writes", "p1-green-1"),
        ]

    async def test_release_backup(self, caps, ctx, collaborators):
        backup = await caps.backup(ctx)
        await caps.release_backup(ctx, backup)
        assert collaborators.backup_store.discarded == [backup]


class TestWatch:
    async def test_conclusive_healthy_report_ends_window(self, caps, ctx, collaborators):
        await caps.watch(ctx, 60.0)
        assert collaborators.health_monitor.checks == ["p1-green-1"]

    async def test_inconclusive_reports_poll_until_window_ends(self, caps, ctx, collaborators):
        collaborators.health_monitor.conclusive = False
        await caps.watch(ctx, 0.05)
        assert len(collaborators.health_monitor.checks) >= 2

    async def test_zero_window_checks_once(self, caps, ctx, collaborators):
        collaborators.health_monitor.conclusive = False
        await caps.watch(ctx, 0.0)
        assert len(collaborators.health_monitor.checks) == 1

    async def test_unhealthy_report_fails(self, caps, ctx, collaborators):
        collaborators.health_monitor.unhealthy["p1"] = "error rate 12%"
        ctx.status = MigrationStatus.MONITORING
        with pytest.raises(ExecutionFailure, match="error rate 12%") as exc_info:
            await caps.watch(ctx, 60.0)
        assert exc_info.value.stage == "monitoring"

    async def test_cancel_wakes_the_window(self, caps, ctx, collaborators):
        collaborators.health_monitor.conclusive = False
        ctx.config = ctx.config.with_overrides(monitoring_poll_interval_seconds=60.0)
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, ctx.cancel_event.set)

        started = loop.time()
        with pytest.raises(CancellationRequested):
            await caps.watch(ctx, 120.0)

        assert loop.time() - started < 5.0
        assert len(collaborators.health_monitor.checks) == 1

    async def test_late_failure_inside_window(self, caps, ctx):
        reports = iter(
            [
                HealthReport(healthy=True),
                HealthReport(healthy=False, reason="latency spike"),
            ]
        )

        class SequencedMonitor:
            async def check(self, env):
                return next(reports)

        watcher = Capabilities(
            None, None, None, None, SequencedMonitor(), None, enable_tracing=False
        )
        with pytest.raises(ExecutionFailure, match="latency spike"):
            await watcher.watch(ctx, 5.0)
