"""
Unit tests for MigrationEngine: submission, status, cancellation,
manual rollback, deferred cleanup and restart recovery.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from migrator.engine import CANCELLED_REASON, RESTART_REASON, MigrationEngine
from migrator.exceptions import (
    InvalidStatusTransitionError,
    MigrationNotFoundError,
    ProjectBusyError,
)
from migrator.models import (
    Backup,
    Environment,
    MigrationRecord,
    MigrationRequest,
    MigrationStatus,
    Strategy,
)
from migrator.stores import InMemoryStateStore
from tests.fixtures import make_plan

BLUE = Environment("p1-blue", "p1", "v1")
GREEN = Environment("p1-green-1", "p1", "v2")


async def run(
    engine: MigrationEngine, project_id: str = "p1", target_version: str = "v2", **kwargs
) -> MigrationRecord:
    plan_id = await engine.submit(MigrationRequest(project_id, target_version, **kwargs))
    return await engine.wait(plan_id, timeout=5.0)


class TestSubmit:
    async def test_submit_returns_plan_id_and_runs(self, engine):
        plan_id = await engine.submit(MigrationRequest("p1", "v2"))
        record = await engine.wait(plan_id, timeout=5.0)

        assert record.plan_id == plan_id
        assert record.status == MigrationStatus.COMPLETED
        assert record.source_version == "v1"
        assert record.target_version == "v2"

    async def test_plan_is_logged(self, engine):
        record = await run(engine)
        assert record.log[0].message.startswith("planned blue_green migration v1 -> v2")

    async def test_second_submission_for_busy_project(self, engine, collaborators):
        collaborators.replicator.gate = asyncio.Event()
        plan_id = await engine.submit(MigrationRequest("p1", "v2"))
        await collaborators.replicator.copy_started.wait()

        with pytest.raises(ProjectBusyError) as exc_info:
            await engine.submit(MigrationRequest("p1", "v3"))

        assert exc_info.value.existing_plan_id == plan_id
        collaborators.replicator.gate.set()
        await engine.wait(plan_id, timeout=5.0)

    async def test_project_is_free_after_completion(self, engine):
        await run(engine)
        record = await run(engine, target_version="v3")
        assert record.status == MigrationStatus.COMPLETED
        assert record.source_version == "v1"

    async def test_submit_locks_released(self, engine):
        await run(engine)
        await run(engine, project_id="p2")
        assert len(engine._submit_locks) == 0

    async def test_invalid_override_rejected_before_record(self, engine):
        with pytest.raises(ValueError):
            await engine.submit(MigrationRequest("p1", "v2", overrides={"no_such_knob": 1}))
        assert await engine.store.list_records(project_id="p1") == []

    async def test_submit_many_rejects_duplicates(self, engine):
        with pytest.raises(ValueError, match="Duplicate project"):
            await engine.submit_many(
                [MigrationRequest("p1", "v2"), MigrationRequest("p1", "v3")]
            )

    async def test_submit_many_runs_independently(self, engine, collaborators):
        collaborators.smoke_tester.failures["p2"] = ["broken"]
        plan_ids = await engine.submit_many(
            [MigrationRequest("p1", "v2"), MigrationRequest("p2", "v2")]
        )

        records = [await engine.wait(plan_id, timeout=5.0) for plan_id in plan_ids]

        assert [r.status for r in records] == [MigrationStatus.COMPLETED, MigrationStatus.FAILED]


class TestStatus:
    async def test_status_view_has_log_tail(self, engine):
        record = await run(engine)

        view = await engine.get_status(record.plan_id)

        assert view.status == MigrationStatus.COMPLETED
        assert view.progress == 100
        assert 0 < len(view.log_tail) <= engine.config.log_tail_size
        assert view.log_tail[-1].message == "status: completed"

    async def test_unknown_plan(self, engine):
        with pytest.raises(MigrationNotFoundError):
            await engine.get_status(uuid4())


class TestCancel:
    async def test_cancel_in_flight(self, engine, collaborators):
        collaborators.replicator.gate = asyncio.Event()
        plan_id = await engine.submit(MigrationRequest("p1", "v2"))
        await collaborators.replicator.copy_started.wait()

        status = await engine.cancel(plan_id)
        collaborators.replicator.gate.set()
        record = await engine.wait(plan_id, timeout=5.0)

        assert status == MigrationStatus.MIGRATING_DATA
        assert record.cancel_requested
        assert record.status == MigrationStatus.ROLLED_BACK
        assert record.error == CANCELLED_REASON
        assert collaborators.provisioner.destroyed == [GREEN]

    async def test_cancel_during_monitoring_window(self, engine, collaborators):
        collaborators.health_monitor.conclusive = False
        overrides = {"monitoring_window_seconds": 30.0, "monitoring_poll_interval_seconds": 10.0}
        plan_id = await engine.submit(MigrationRequest("p1", "v2", overrides=overrides))
        async with asyncio.timeout(5.0):
            while not collaborators.health_monitor.checks:
                await asyncio.sleep(0.005)

        status = await engine.cancel(plan_id)
        record = await engine.wait(plan_id, timeout=5.0)

        assert status == MigrationStatus.MONITORING
        assert record.status == MigrationStatus.ROLLED_BACK
        assert record.error == CANCELLED_REASON
        assert record.failed_stage == "monitoring"

    async def test_cancel_pending_bulk_plan(self, engine, collaborators):
        collaborators.replicator.gate = asyncio.Event()
        batch_id = await engine.submit_bulk(["a", "b"], "v2", concurrency=1)
        await collaborators.replicator.copy_started.wait()

        records = {r.project_id: r for r in await engine.store.list_records(batch_id=batch_id)}
        status = await engine.cancel(records["b"].plan_id)
        collaborators.replicator.gate.set()
        result = await engine.wait_for_batch(batch_id, timeout=5.0)

        assert status == MigrationStatus.FAILED
        cancelled = await engine.store.get_record(records["b"].plan_id)
        assert cancelled.error == CANCELLED_REASON
        assert cancelled.failed_stage == "pending"
        assert result.successful == 1
        assert result.failed == 1
        assert [env.project_id for env in collaborators.provisioner.created] == ["a"]

    async def test_cancel_final_is_noop(self, engine):
        record = await run(engine)
        assert await engine.cancel(record.plan_id) == MigrationStatus.COMPLETED

    async def test_cancel_unknown(self, engine):
        with pytest.raises(MigrationNotFoundError):
            await engine.cancel(uuid4())


class TestManualRollback:
    async def test_rollback_after_contained_failure(self, engine, collaborators):
        collaborators.smoke_tester.failures["p1"] = ["login returns 500"]
        failed = await run(engine)
        assert failed.status == MigrationStatus.FAILED
        assert failed.rollback_available

        record = await engine.rollback(failed.plan_id)

        assert record.status == MigrationStatus.ROLLED_BACK
        assert record.failed_stage == "testing"
        assert collaborators.backup_store.restored == [("p1", failed.backup)]
        assert collaborators.provisioner.destroyed == [GREEN]

    async def test_rollback_is_idempotent(self, engine, collaborators):
        collaborators.smoke_tester.failures["p1"] = ["broken"]
        failed = await run(engine)

        await engine.rollback(failed.plan_id)
        again = await engine.rollback(failed.plan_id)

        assert again.status == MigrationStatus.ROLLED_BACK
        assert len(collaborators.backup_store.restored) == 1

    async def test_completed_migration_cannot_be_rolled_back(self, engine):
        record = await run(engine)
        with pytest.raises(InvalidStatusTransitionError):
            await engine.rollback(record.plan_id)


class TestCleanup:
    async def test_nothing_due_before_retention(self, engine, collaborators):
        await run(engine)
        assert await engine.run_due_cleanups(datetime.now(UTC) + timedelta(days=1)) == []
        assert collaborators.provisioner.destroyed == []

    async def test_completed_migration_releases_blue_and_backup(self, engine, collaborators):
        record = await run(engine)

        done = await engine.run_due_cleanups(datetime.now(UTC) + timedelta(days=8))

        assert len(done) == 1
        assert collaborators.provisioner.destroyed == [BLUE]
        assert collaborators.backup_store.discarded == [record.backup]
        updated = await engine.store.get_record(record.plan_id)
        assert not updated.rollback_available
        assert updated.log[-1].message == "cleanup released environment p1-blue, backup backup-1"

    async def test_tickets_run_once(self, engine, collaborators):
        await run(engine)
        later = datetime.now(UTC) + timedelta(days=8)

        await engine.run_due_cleanups(later)
        assert await engine.run_due_cleanups(later) == []
        assert len(collaborators.provisioner.destroyed) == 1

    async def test_failed_cleanup_is_retried(self, engine, collaborators):
        await run(engine)
        later = datetime.now(UTC) + timedelta(days=8)
        collaborators.provisioner.fail_destroy["p1"] = RuntimeError("api down")

        assert await engine.run_due_cleanups(later) == []

        del collaborators.provisioner.fail_destroy["p1"]
        assert len(await engine.run_due_cleanups(later)) == 1

    async def test_rolled_back_backup_not_discarded_twice(self, engine, collaborators):
        collaborators.smoke_tester.failures["p1"] = ["broken"]
        failed = await run(engine)
        await engine.rollback(failed.plan_id)
        assert collaborators.backup_store.discarded == [failed.backup]

        await engine.run_due_cleanups(datetime.now(UTC) + timedelta(days=8))

        assert collaborators.backup_store.discarded == [failed.backup]


class TestRecover:
    async def interrupted(self, store, status, **fields):
        plan = make_plan()
        await store.create_record(MigrationRecord.for_plan(plan))
        for step in (
            MigrationStatus.PREFLIGHT_CHECKS,
            MigrationStatus.BACKING_UP,
            MigrationStatus.PROVISIONING,
            MigrationStatus.MIGRATING_DATA,
            MigrationStatus.TESTING,
            MigrationStatus.SWITCHING_TRAFFIC,
        ):
            await store.update_status(plan.plan_id, step)
            if step == status:
                break
        if fields:
            await store.update_record(plan.plan_id, **fields)
        return plan

    async def test_nothing_to_recover(self, engine):
        assert await engine.recover() == []

    async def test_untouched_record_is_aborted(self, engine, in_memory_store, collaborators):
        backup = Backup("backup-7", "p1")
        plan = await self.interrupted(
            in_memory_store,
            MigrationStatus.MIGRATING_DATA,
            blue_env=BLUE,
            green_env=GREEN,
            backup=backup,
            rollback_available=True,
        )

        [record] = await engine.recover()

        assert record.plan_id == plan.plan_id
        assert record.status == MigrationStatus.FAILED
        assert record.error == RESTART_REASON
        assert record.failed_stage == "migrating_data"
        assert collaborators.provisioner.destroyed == [GREEN]
        assert collaborators.backup_store.restored == []
        [ticket] = await in_memory_store.list_cleanups(plan.plan_id)
        assert ticket.backup == backup

    async def test_touched_record_is_rolled_back(self, engine, in_memory_store, collaborators):
        plan = await self.interrupted(
            in_memory_store,
            MigrationStatus.SWITCHING_TRAFFIC,
            blue_env=BLUE,
            green_env=GREEN,
            backup=Backup("backup-7", "p1"),
            rollback_available=True,
            live_touched=True,
            traffic_shifted=True,
        )

        [record] = await engine.recover()

        assert record.plan_id == plan.plan_id
        assert record.status == MigrationStatus.ROLLED_BACK
        assert record.failed_stage == "switching_traffic"
        assert ("switch", "p1-green-1", "p1-blue") in collaborators.router.calls

    async def test_cancel_flag_kept_as_reason(self, engine, in_memory_store, collaborators):
        plan = await self.interrupted(
            in_memory_store,
            MigrationStatus.MIGRATING_DATA,
            blue_env=BLUE,
            green_env=GREEN,
            backup=Backup("backup-7", "p1"),
            rollback_available=True,
            cancel_requested=True,
        )

        [record] = await engine.recover()

        assert record.plan_id == plan.plan_id
        assert record.status == MigrationStatus.FAILED
        assert record.error == CANCELLED_REASON
        assert collaborators.provisioner.destroyed == [GREEN]

    async def test_pending_record_is_failed(self, engine, in_memory_store):
        plan = make_plan()
        await in_memory_store.create_record(MigrationRecord.for_plan(plan))

        [record] = await engine.recover()

        assert record.status == MigrationStatus.FAILED
        assert record.failed_stage == "pending"


class TestDefaults:
    async def test_in_memory_store_by_default(self, collaborators):
        engine = MigrationEngine(**collaborators.engine_kwargs(), enable_tracing=False)
        assert isinstance(engine.store, InMemoryStateStore)
        await engine.shutdown(timeout=1.0)

    async def test_shadow_through_engine(self, engine, collaborators):
        record = await run(engine, strategy=Strategy.SHADOW)
        assert record.status == MigrationStatus.COMPLETED
        assert collaborators.provisioner.destroyed == [GREEN]

    async def test_notifications_delivered(self, engine, collaborators):
        await run(engine)
        await engine.dispatcher.drain()
        assert collaborators.notifier.types() == ["MigrationStarted", "MigrationCompleted"]
