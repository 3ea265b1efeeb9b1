"""
MigrationEngine: the public entry point of the migration orchestration engine.

The engine wires the planner, preflight checker, executor, validator,
rollback coordinator and bulk scheduler around one State Store and
exposes the operations callers use:

    submit / submit_many     start migrations, return plan ids
    get_status               record plus log tail
    cancel                   cancel pending or in-flight migrations
    submit_bulk              start a bulk submission, return a batch id
    get_batch_result         aggregate over a submission's records
    stream_batch             async iterator of batch progress
    wait_for_batch           wait for a submission to finish
    rollback                 manual (idempotent) rollback of a failed plan
    run_due_cleanups         release resources kept past their retention
    recover                  settle work interrupted by a restart
    shutdown                 wait for background work, then stop

Migrations run in background tasks; every outcome is read from the store.

Example:
    >>> engine = MigrationEngine(
    ...     provisioner=provisioner,
    ...     replicator=replicator,
    ...     router=router,
    ...     backup_store=backups,
    ...     deployer=deployer,
    ...     smoke_tester=smoke,
    ...     inspector=inspector,
    ...     health_monitor=health,
    ...     store=SQLAlchemyStateStore(conn),
    ... )
    >>> plan_id = await engine.submit(MigrationRequest("p1", "v2"))
    >>> view = await engine.get_status(plan_id)
    >>> view.status
    <MigrationStatus.PREFLIGHT_CHECKS: 'preflight_checks'>
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Coroutine, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from migrator.capabilities import Capabilities
from migrator.config import EngineConfig
from migrator.exceptions import (
    BatchNotFoundError,
    ErrorHandler,
    InvalidStatusTransitionError,
    MigrationError,
    MigrationNotFoundError,
    ProjectBusyError,
    RollbackFailure,
)
from migrator.executor import MigrationExecutor
from migrator.interfaces import (
    BackupStore,
    DataInspector,
    Deployer,
    HealthMonitor,
    Notifier,
    Provisioner,
    Replicator,
    SmokeTester,
    TrafficRouter,
)
from migrator.metrics import EngineMetrics
from migrator.models import (
    BatchRecord,
    BatchResult,
    BatchStatus,
    CleanupTicket,
    MigrationPlan,
    MigrationRecord,
    MigrationRequest,
    MigrationStatus,
    MigrationStatusView,
    Strategy,
)
from migrator.notifications import MigrationCancelled, NotificationDispatcher
from migrator.observability import (
    ATTR_BATCH_ID,
    ATTR_BATCH_SIZE,
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    ATTR_STRATEGY,
    ATTR_TARGET_VERSION,
    Tracer,
    create_tracer,
)
from migrator.planner import MigrationPlanner, effective_config
from migrator.preflight import PreflightChecker
from migrator.rollback import RollbackCoordinator
from migrator.scheduler import BulkScheduler, order_plans
from migrator.stores import InMemoryStateStore, StateStore
from migrator.strategies import StrategyRegistry, default_registry
from migrator.validator import Validator

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
RESTART_REASON = "interrupted by restart"


class MigrationEngine:
    """
    Orchestrates project migrations.

    Collaborators are passed by keyword. Without a store the engine keeps
    its state in memory, which is only suitable for tests and local
    development.
    """

    def __init__(
        self,
        *,
        provisioner: Provisioner,
        replicator: Replicator,
        router: TrafficRouter,
        backup_store: BackupStore,
        deployer: Deployer,
        smoke_tester: SmokeTester,
        inspector: DataInspector,
        health_monitor: HealthMonitor,
        store: StateStore | None = None,
        config: EngineConfig | None = None,
        registry: StrategyRegistry | None = None,
        notifier: Notifier | None = None,
        metrics: EngineMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._config = config or EngineConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store or InMemoryStateStore(tracer=self._tracer)
        self._registry = registry or default_registry
        self._metrics = metrics or EngineMetrics()
        self._dispatcher = NotificationDispatcher(notifier)
        self._provisioner = provisioner
        self._backup_store = backup_store
        self._handler = ErrorHandler(self._config.retry)

        self._planner = MigrationPlanner(
            provisioner, inspector, self._config, self._registry, tracer=self._tracer
        )
        self._preflight = PreflightChecker(
            backup_store, provisioner, replicator, deployer, self._registry, tracer=self._tracer
        )
        self._capabilities = Capabilities(
            provisioner,
            replicator,
            router,
            deployer,
            health_monitor,
            backup_store,
            tracer=self._tracer,
        )
        self._validator = Validator(
            smoke_tester,
            inspector,
            sample_size=self._config.spot_check_sample_size,
            tracer=self._tracer,
        )
        self._rollback = RollbackCoordinator(
            self._store,
            backup_store,
            provisioner,
            router,
            deployer,
            dispatcher=self._dispatcher,
            metrics=self._metrics,
            retry_config=self._config.retry,
            tracer=self._tracer,
        )
        self._executor = MigrationExecutor(
            self._store,
            self._preflight,
            self._capabilities,
            self._validator,
            self._rollback,
            config=self._config,
            registry=self._registry,
            dispatcher=self._dispatcher,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        self._scheduler = BulkScheduler(
            self._store,
            self._executor,
            dispatcher=self._dispatcher,
            metrics=self._metrics,
            tracer=self._tracer,
        )

        self._submit_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._plan_tasks: dict[UUID, asyncio.Task[MigrationRecord]] = {}
        self._batch_tasks: dict[UUID, asyncio.Task[BatchResult]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def registry(self) -> StrategyRegistry:
        return self._registry

    @property
    def preflight(self) -> PreflightChecker:
        """The preflight checker, for registering additional checks."""
        return self._preflight

    @property
    def metrics(self) -> EngineMetrics:
        return self._metrics

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    def get_background_task_count(self) -> int:
        return len(self._background_tasks)

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._on_background_task_done)
        self._background_tasks.add(task)
        return task

    def _on_background_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                error,
                exc_info=error,
            )

    def _submit_lock(self, project_id: str) -> asyncio.Lock:
        lock = self._submit_locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._submit_locks[project_id] = lock
        return lock

    async def _ensure_idle(self, project_id: str) -> None:
        active = await self._store.get_active_for_project(project_id)
        if active is not None:
            raise ProjectBusyError(project_id, active.plan_id)

    async def _create_record(self, plan: MigrationPlan) -> None:
        await self._store.create_record(MigrationRecord.for_plan(plan))
        await self._store.append_log(
            plan.plan_id,
            f"planned {plan.strategy.value} migration {plan.source_version} -> "
            f"{plan.target_version} ({len(plan.steps)} steps, "
            f"~{plan.estimated_duration_seconds:.0f}s)",
        )

    # =========================================================================
    # Single migrations
    # =========================================================================

    async def submit(self, request: MigrationRequest) -> UUID:
        """
        Plan a migration and start executing it in the background.

        Args:
            request: Project, target version, strategy and overrides.

        Returns:
            The plan id.

        Raises:
            ProjectBusyError: If the project already has an active migration.
            KeyError: If the strategy is not registered.
            ValueError: If the request's overrides are invalid.
        """
        with self._tracer.span(
            "migrator.engine.submit",
            {
                ATTR_PROJECT_ID: request.project_id,
                ATTR_STRATEGY: request.strategy.value,
                ATTR_TARGET_VERSION: request.target_version,
            },
        ):
            async with self._submit_lock(request.project_id):
                await self._ensure_idle(request.project_id)
                plan = await self._planner.build(request)
                await self._create_record(plan)

            task = self._spawn(self._executor.execute(plan), name=f"migration-{plan.plan_id}")
            self._plan_tasks[plan.plan_id] = task
            task.add_done_callback(lambda _: self._plan_tasks.pop(plan.plan_id, None))

            logger.info(
                "Submitted %s migration of %s to %s (plan %s)",
                request.strategy.value,
                request.project_id,
                request.target_version,
                plan.plan_id,
            )
            return plan.plan_id

    async def submit_many(self, requests: Sequence[MigrationRequest]) -> list[UUID]:
        """
        Submit several independent migrations.

        Raises:
            ValueError: If two requests name the same project.
            ProjectBusyError: If a project already has an active migration;
                requests before it have been submitted.
        """
        seen: set[str] = set()
        for request in requests:
            if request.project_id in seen:
                raise ValueError(f"Duplicate project in requests: {request.project_id}")
            seen.add(request.project_id)
        return [await self.submit(request) for request in requests]

    async def wait(self, plan_id: UUID, timeout: float | None = None) -> MigrationRecord:
        """
        Wait for a migration started by this engine to reach a final status.

        Raises:
            MigrationNotFoundError: If the record does not exist.
            TimeoutError: If the timeout elapses first.
        """
        task = self._plan_tasks.get(plan_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        record = await self._store.get_record(plan_id)
        if record is None:
            raise MigrationNotFoundError(plan_id)
        return record

    async def get_status(self, plan_id: UUID) -> MigrationStatusView:
        """
        Get a migration's record and the tail of its log trail.

        Raises:
            MigrationNotFoundError: If the record does not exist.
        """
        record = await self._store.get_record(plan_id)
        if record is None:
            raise MigrationNotFoundError(plan_id)
        tail = await self._store.get_log(plan_id, limit=self._config.log_tail_size)
        return MigrationStatusView(record=record, log_tail=tuple(tail))

    async def cancel(self, plan_id: UUID) -> MigrationStatus:
        """
        Cancel a migration.

        A pending migration is marked FAILED ("cancelled") immediately.
        An in-flight one is flagged both in process and on the record, so
        an executor in another process sharing the store sees it too. The
        executor stops at its next step boundary or health poll and rolls
        back if a backup exists. Final migrations are
        left unchanged.

        Returns:
            The record's status after the request.

        Raises:
            MigrationNotFoundError: If the record does not exist.
        """
        with self._tracer.span("migrator.engine.cancel", {ATTR_PLAN_ID: str(plan_id)}):
            record = await self._store.get_record(plan_id)
            if record is None:
                raise MigrationNotFoundError(plan_id)
            if record.status.is_final:
                return record.status

            if record.status == MigrationStatus.PENDING:
                try:
                    updated = await self._store.update_status(
                        plan_id,
                        MigrationStatus.FAILED,
                        error=CANCELLED_REASON,
                        failed_stage="pending",
                    )
                except InvalidStatusTransitionError:
                    # Started executing in the meantime
                    pass
                else:
                    await self._store.append_log(
                        plan_id, "cancelled while pending", level="warning"
                    )
                    self._metrics.record_failed(record.strategy.value, "pending", in_flight=False)
                    self._dispatcher.dispatch(
                        MigrationCancelled(
                            plan_id=plan_id,
                            project_id=record.project_id,
                            message="Migration cancelled before it started",
                        )
                    )
                    logger.info("Cancelled pending plan %s", plan_id)
                    return updated.status

            self._executor.request_cancel(plan_id)
            updated = await self._store.update_record(plan_id, cancel_requested=True)
            await self._store.append_log(plan_id, "cancellation requested", level="warning")
            logger.info("Cancellation requested for plan %s (%s)", plan_id, updated.status.value)
            return updated.status

    async def rollback(self, plan_id: UUID) -> MigrationRecord:
        """
        Manually roll back a failed migration. Idempotent.

        Raises:
            MigrationNotFoundError: If the record does not exist.
            InvalidStatusTransitionError: If the migration is not FAILED or
                ROLLED_BACK (cancel active migrations instead).
            MigrationError: If no backup is held.
            RollbackFailure: If the rollback failed.
        """
        return await self._rollback.rollback(plan_id, reason="manual rollback requested")

    # =========================================================================
    # Bulk submissions
    # =========================================================================

    async def submit_bulk(
        self,
        project_ids: Sequence[str],
        target_version: str,
        strategy: Strategy = Strategy.BLUE_GREEN,
        concurrency: int | None = None,
        *,
        overrides: dict[str, Any] | None = None,
    ) -> UUID:
        """
        Plan one migration per project and dispatch them in batches.

        Duplicate project ids are submitted once. Nothing is created if
        any project is busy or any plan cannot be built.

        Args:
            project_ids: Projects to migrate.
            target_version: Version every project migrates to.
            strategy: Strategy every plan uses.
            concurrency: Dispatch batch size (defaults to the configured one).
            overrides: EngineConfig overrides applied to every plan.

        Returns:
            The batch id.

        Raises:
            ValueError: If no projects are given or concurrency is below 1.
            ProjectBusyError: If a project already has an active migration.
        """
        unique = list(dict.fromkeys(project_ids))
        if not unique:
            raise ValueError("submit_bulk requires at least one project")
        size = self._config.default_concurrency if concurrency is None else concurrency
        if size < 1:
            raise ValueError(f"concurrency must be at least 1, got {size}")
        config = effective_config(self._config, target_version, overrides)

        batch_id = uuid4()
        with self._tracer.span(
            "migrator.engine.submit_bulk",
            {
                ATTR_BATCH_ID: str(batch_id),
                ATTR_BATCH_SIZE: len(unique),
                ATTR_STRATEGY: strategy.value,
                ATTR_TARGET_VERSION: target_version,
            },
        ):
            for project_id in unique:
                await self._ensure_idle(project_id)

            plans = await asyncio.gather(
                *(
                    self._planner.build(
                        MigrationRequest(
                            project_id, target_version, strategy, dict(overrides or {})
                        ),
                        batch_id=batch_id,
                    )
                    for project_id in unique
                )
            )
            ordered = order_plans(plans)

            created: list[MigrationPlan] = []
            try:
                for plan in ordered:
                    await self._create_record(plan)
                    created.append(plan)
            except ProjectBusyError:
                for plan in created:
                    await self._store.update_status(
                        plan.plan_id,
                        MigrationStatus.FAILED,
                        error="bulk submission rejected",
                        failed_stage="pending",
                    )
                raise

            batch = BatchRecord(
                batch_id=batch_id,
                plan_ids=[plan.plan_id for plan in ordered],
                target_version=target_version,
                strategy=strategy,
                concurrency=size,
            )
            await self._store.save_batch(batch)

            task = self._spawn(
                self._scheduler.run(batch, ordered, threshold=config.failure_threshold),
                name=f"batch-{batch_id}",
            )
            self._batch_tasks[batch_id] = task
            task.add_done_callback(lambda _: self._batch_tasks.pop(batch_id, None))

            logger.info(
                "Accepted bulk submission %s: %d project(s) to %s, concurrency %d",
                batch_id,
                len(unique),
                target_version,
                size,
            )
            return batch_id

    async def get_batch_result(self, batch_id: UUID) -> BatchResult:
        """
        Aggregate a bulk submission's records.

        Plans waiting for dispatch are counted in none of successful,
        failed or in_progress.

        Raises:
            BatchNotFoundError: If the batch does not exist.
        """
        batch = await self._store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        records = await self._store.list_records(batch_id=batch_id)
        by_id = {record.plan_id: record for record in records}
        not_started = set(batch.not_started)
        dispatched = [
            by_id[plan_id]
            for plan_id in batch.plan_ids
            if plan_id in by_id and plan_id not in not_started
        ]

        successful = sum(1 for r in dispatched if r.status == MigrationStatus.COMPLETED)
        failed = sum(
            1
            for r in dispatched
            if r.status in (MigrationStatus.FAILED, MigrationStatus.ROLLED_BACK)
        )
        in_progress = sum(
            1 for r in dispatched if r.is_active and r.status != MigrationStatus.PENDING
        )
        return BatchResult(
            batch_id=batch_id,
            total=len(batch.plan_ids),
            successful=successful,
            failed=failed,
            in_progress=in_progress,
            not_started=tuple(batch.not_started),
            aborted=batch.status == BatchStatus.ABORTED,
            abort_reason=batch.abort_reason,
            records=tuple(r for r in dispatched if r.status != MigrationStatus.PENDING),
        )

    async def stream_batch(
        self,
        batch_id: UUID,
        update_interval: float = 1.0,
    ) -> AsyncIterator[BatchResult]:
        """
        Yield the batch result each time it changes, until the batch is done.

        Example:
            >>> async for result in engine.stream_batch(batch_id, update_interval=0.5):
            ...     print(f"{result.successful}/{result.total} done")
        """
        last: tuple[int, int, int, int, bool] | None = None
        while True:
            result = await self.get_batch_result(batch_id)
            key = (
                result.successful,
                result.failed,
                result.in_progress,
                len(result.not_started),
                result.aborted,
            )
            if key != last:
                last = key
                yield result
            if result.is_done:
                return
            await asyncio.sleep(update_interval)

    async def wait_for_batch(
        self,
        batch_id: UUID,
        timeout: float | None = None,
        update_interval: float = 1.0,
    ) -> BatchResult:
        """
        Wait until a bulk submission is done and return its result.

        Raises:
            BatchNotFoundError: If the batch does not exist.
            TimeoutError: If the timeout elapses first.
        """
        task = self._batch_tasks.get(batch_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
            return await self.get_batch_result(batch_id)

        async def _poll() -> BatchResult:
            result = await self.get_batch_result(batch_id)
            async for result in self.stream_batch(batch_id, update_interval):
                pass
            return result

        return await asyncio.wait_for(_poll(), timeout)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def run_due_cleanups(self, now: datetime | None = None) -> list[CleanupTicket]:
        """
        Release environments and backups whose retention window has elapsed.

        Meant to be called periodically. A ticket whose cleanup fails is
        logged and left for the next run.

        Returns:
            Tickets completed by this run.
        """
        now = now or datetime.now(UTC)
        with self._tracer.span("migrator.engine.run_due_cleanups", {}):
            tickets = await self._store.due_cleanups(now)
            done: list[CleanupTicket] = []
            for ticket in tickets:
                try:
                    await self._run_cleanup(ticket, now)
                except Exception as e:
                    logger.error(
                        "Cleanup %s for plan %s failed, will retry: %s",
                        ticket.ticket_id,
                        ticket.plan_id,
                        e,
                        exc_info=True,
                    )
                    continue
                done.append(ticket)
            if tickets:
                logger.info("Ran %d of %d due cleanup(s)", len(done), len(tickets))
            return done

    async def _run_cleanup(self, ticket: CleanupTicket, now: datetime) -> None:
        record = await self._store.get_record(ticket.plan_id)
        env = ticket.environment
        backup = ticket.backup

        if env is not None:
            await self._handler.execute_with_retry(
                lambda: self._provisioner.destroy(env), "destroy", plan_id=ticket.plan_id
            )
        # A rolled back record already released its backup
        if backup is not None and not (record is not None and record.rolled_back):
            await self._handler.execute_with_retry(
                lambda: self._backup_store.discard(backup), "discard_backup", plan_id=ticket.plan_id
            )
        await self._store.complete_cleanup(ticket.ticket_id, now)

        if record is None:
            return
        if backup is not None and record.rollback_available:
            await self._store.update_record(ticket.plan_id, rollback_available=False)
        released = ", ".join(
            part
            for part in (
                f"environment {env.env_id}" if env is not None else "",
                f"backup {backup.backup_id}" if backup is not None else "",
            )
            if part
        )
        await self._store.append_log(ticket.plan_id, f"cleanup released {released}")

    async def recover(self) -> list[MigrationRecord]:
        """
        Settle migrations left unfinished by a previous process.

        Pending records are marked FAILED. Records whose live environment
        was touched are marked FAILED and rolled back; the rest are aborted
        (green destroyed, backup scheduled for release). The failure reason
        is "cancelled" for records whose cancel flag was set, otherwise
        "interrupted by restart". Running bulk submissions are marked
        aborted.

        Call once at startup, before submitting new work.

        Returns:
            The settled records.
        """
        with self._tracer.span("migrator.engine.recover", {}):
            unfinished = [
                record
                for record in await self._store.list_unfinished()
                if record.plan_id not in self._plan_tasks
                and not self._executor.is_running(record.project_id)
            ]
            if not unfinished:
                return []

            logger.warning("Recovering %d unfinished migration(s)", len(unfinished))
            await self._abort_interrupted_batches(unfinished)

            settled: list[MigrationRecord] = []
            for record in unfinished:
                try:
                    settled.append(await self._recover_record(record))
                except RollbackFailure:
                    # Already escalated by the rollback coordinator
                    current = await self._store.get_record(record.plan_id)
                    settled.append(current or record)
            return settled

    async def _abort_interrupted_batches(self, unfinished: list[MigrationRecord]) -> None:
        pending = {r.plan_id for r in unfinished if r.status == MigrationStatus.PENDING}
        batch_ids = {r.batch_id for r in unfinished if r.batch_id is not None}
        for batch_id in batch_ids:
            batch = await self._store.get_batch(batch_id)
            if batch is None or batch.status != BatchStatus.RUNNING:
                continue
            batch.status = BatchStatus.ABORTED
            batch.not_started = [plan_id for plan_id in batch.plan_ids if plan_id in pending]
            batch.abort_reason = RESTART_REASON
            batch.completed_at = datetime.now(UTC)
            await self._store.finish_batch(batch)
            logger.warning(
                "Aborted bulk submission %s: %d plan(s) not started",
                batch_id,
                len(batch.not_started),
            )

    async def _recover_record(self, record: MigrationRecord) -> MigrationRecord:
        plan_id = record.plan_id
        stage = record.status.stage
        reason = CANCELLED_REASON if record.cancel_requested else RESTART_REASON
        await self._store.update_status(
            plan_id, MigrationStatus.FAILED, error=reason, failed_stage=stage
        )
        await self._store.append_log(plan_id, f"failed at {stage}: {reason}", level="error")

        if record.live_touched and record.backup is not None:
            logger.warning("Rolling back interrupted plan %s (%s)", plan_id, stage)
            return await self._rollback.rollback(plan_id, reason=reason)

        now = datetime.now(UTC)
        green = record.green_env
        if green is not None:
            try:
                await self._handler.execute_with_retry(
                    lambda: self._provisioner.destroy(green), "destroy", plan_id=plan_id
                )
            except MigrationError as e:
                logger.error("Failed to destroy environment %s: %s", green.env_id, e)
                await self._store.schedule_cleanup(
                    CleanupTicket(
                        plan_id=plan_id,
                        project_id=record.project_id,
                        due_at=now,
                        environment=green,
                    )
                )
        if record.backup is not None:
            await self._store.schedule_cleanup(
                CleanupTicket(
                    plan_id=plan_id,
                    project_id=record.project_id,
                    due_at=now + self._config.cleanup_retention,
                    backup=record.backup,
                )
            )
        self._metrics.record_failed(record.strategy.value, stage, in_flight=False)
        logger.warning("Aborted interrupted plan %s at %s", plan_id, stage)
        return await self._store.get_record(plan_id) or record

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Wait for background migrations and notifications, cancelling what remains.

        Migrations cancelled here are settled by recover() on the next start.

        Args:
            timeout: Maximum time to wait in seconds.
        """
        if self._background_tasks:
            logger.info(
                "Shutting down migration engine, waiting for %d background task(s)",
                len(self._background_tasks),
            )
            pending = list(self._background_tasks)
            _, remaining = await asyncio.wait(
                pending,
                timeout=timeout,
                return_when=asyncio.ALL_COMPLETED,
            )
            if remaining:
                logger.warning(
                    "Migration engine shutdown: %d background task(s) did not complete "
                    "within timeout",
                    len(remaining),
                )
                for task in remaining:
                    task.cancel()
                await asyncio.gather(*remaining, return_exceptions=True)
        await self._dispatcher.shutdown(timeout)


__all__ = ["MigrationEngine", "CANCELLED_REASON", "RESTART_REASON"]
