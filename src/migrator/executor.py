"""
Migration Executor: drives one plan through the state machine.

Execution:
    PENDING -> PREFLIGHT_CHECKS   readiness checks, no side effects
            -> BACKING_UP         resolve blue, take the backup
            -> PROVISIONING ...   the strategy's steps, in order; the record
                                  advances whenever a step belongs to a
                                  later status
            -> COMPLETED          deferred cleanup scheduled (or, for
                                  rehearsals, green discarded)

Every transition is persisted before the next step begins.

Failure handling:
    - Before the live (blue) environment is touched the failure is
      contained: green is destroyed and the record ends FAILED with the
      stage where it failed. No rollback runs.
    - Once writes were paused or any traffic moved, the Rollback
      Coordinator runs exactly once and the record ends ROLLED_BACK.
    - A cancellation (in process or persisted on the record) is observed
      between steps and between health polls. It takes the rollback path
      as soon as a backup exists.

execute() never raises for a plan's own failure; the outcome is in the
returned record.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from uuid import UUID

from migrator.capabilities import Capabilities, ExecutionContext
from migrator.config import EngineConfig
from migrator.exceptions import (
    CancellationRequested,
    ExecutionFailure,
    MigrationError,
    MigrationNotFoundError,
    PreflightFailure,
    RollbackFailure,
    classify_exception,
)
from migrator.metrics import EngineMetrics
from migrator.models import (
    FORWARD_STATUSES,
    CleanupTicket,
    MigrationPlan,
    MigrationRecord,
    MigrationStatus,
    MigrationStep,
    StepAction,
)
from migrator.notifications import (
    MigrationCancelled,
    MigrationCompleted,
    MigrationFailed,
    MigrationStarted,
    NotificationDispatcher,
)
from migrator.observability import (
    ATTR_ERROR_TYPE,
    ATTR_NEW_STATUS,
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    ATTR_SOURCE_VERSION,
    ATTR_STEP_ACTION,
    ATTR_STRATEGY,
    ATTR_TARGET_VERSION,
    Tracer,
    create_tracer,
)
from migrator.planner import effective_config
from migrator.preflight import PreflightChecker
from migrator.rollback import RollbackCoordinator
from migrator.stores import StateStore
from migrator.strategies import MigrationStrategy, StrategyRegistry, default_registry
from migrator.validator import ValidationPhase, Validator

logger = logging.getLogger(__name__)

StepHandler = Callable[[ExecutionContext, MigrationStep], Awaitable[None]]


class MigrationExecutor:
    """
    Executes migration plans.

    Plans for the same project never run concurrently: the executor holds
    a per-project lock for the whole run.

    Example:
        >>> executor = MigrationExecutor(store, preflight, capabilities, validator, rollback)
        >>> record = await executor.execute(plan)
        >>> record.status
        <MigrationStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: StateStore,
        preflight: PreflightChecker,
        capabilities: Capabilities,
        validator: Validator,
        rollback: RollbackCoordinator,
        config: EngineConfig | None = None,
        registry: StrategyRegistry | None = None,
        dispatcher: NotificationDispatcher | None = None,
        metrics: EngineMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._preflight = preflight
        self._caps = capabilities
        self._validator = validator
        self._rollback = rollback
        self._config = config or EngineConfig()
        self._registry = registry or default_registry
        self._dispatcher = dispatcher or NotificationDispatcher()
        self._metrics = metrics or EngineMetrics(enable_metrics=False)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._project_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._running: dict[UUID, ExecutionContext] = {}
        self._handlers: dict[StepAction, StepHandler] = {
            StepAction.PROVISION: self._provision,
            StepAction.BULK_COPY: self._bulk_copy,
            StepAction.TRANSFORM_DATA: self._transform_data,
            StepAction.DEPLOY: self._deploy,
            StepAction.SMOKE_TEST: self._smoke_test,
            StepAction.PAUSE_WRITES: self._pause_writes,
            StepAction.INCREMENTAL_SYNC: self._incremental_sync,
            StepAction.SHIFT_TRAFFIC: self._shift_traffic,
            StepAction.SWITCH_TRAFFIC: self._switch_traffic,
            StepAction.MIRROR_TRAFFIC: self._mirror_traffic,
            StepAction.WATCH: self._watch,
            StepAction.RESUME_WRITES: self._resume_writes,
            StepAction.MONITOR: self._watch,
            StepAction.STOP_MIRROR: self._stop_mirror,
            StepAction.VERIFY: self._verify,
        }

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        lock = self._project_locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._project_locks[project_id] = lock
        return lock

    def request_cancel(self, plan_id: UUID) -> None:
        """Ask a running plan to stop at its next step boundary or health poll."""
        ctx = self._running.get(plan_id)
        if ctx is not None:
            ctx.cancel_event.set()

    def is_running(self, project_id: str) -> bool:
        lock = self._project_locks.get(project_id)
        return lock is not None and lock.locked()

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, plan: MigrationPlan) -> MigrationRecord:
        """
        Run a plan to a final status.

        Plans whose record is no longer PENDING (for example cancelled
        while waiting for dispatch) are skipped.

        Returns:
            The record in its final status.

        Raises:
            MigrationNotFoundError: If the plan has no record.
        """
        with self._tracer.span(
            "migrator.executor.execute",
            {
                ATTR_PLAN_ID: str(plan.plan_id),
                ATTR_PROJECT_ID: plan.project_id,
                ATTR_STRATEGY: plan.strategy.value,
                ATTR_SOURCE_VERSION: plan.source_version,
                ATTR_TARGET_VERSION: plan.target_version,
            },
        ):
            async with self._project_lock(plan.project_id):
                record = await self._store.get_record(plan.plan_id)
                if record is None:
                    raise MigrationNotFoundError(plan.plan_id)
                if record.status != MigrationStatus.PENDING:
                    logger.info(
                        "Skipping plan %s for project %s: status is %s",
                        plan.plan_id,
                        plan.project_id,
                        record.status.value,
                    )
                    return record

                ctx = ExecutionContext(
                    plan=plan,
                    config=effective_config(
                        self._config, plan.target_version, plan.config_overrides
                    ),
                    cancel_source=self._cancel_source(plan.plan_id),
                )
                logger.info(
                    "Starting %s migration of %s from %s to %s (plan %s)",
                    plan.strategy.value,
                    plan.project_id,
                    plan.source_version,
                    plan.target_version,
                    plan.plan_id,
                )
                self._metrics.record_started(plan.strategy.value)
                self._dispatcher.dispatch(
                    MigrationStarted(
                        plan_id=plan.plan_id,
                        project_id=plan.project_id,
                        target_version=plan.target_version,
                        message=f"Migration to {plan.target_version} started",
                    )
                )

                self._running[plan.plan_id] = ctx
                try:
                    strategy = self._registry.get(plan.strategy)
                    await self._run(ctx)
                    return await self._complete(ctx, strategy)
                except Exception as e:
                    return await self._handle_failure(ctx, e)
                finally:
                    del self._running[plan.plan_id]

    async def _run(self, ctx: ExecutionContext) -> None:
        plan = ctx.plan

        await self._advance(ctx, MigrationStatus.PREFLIGHT_CHECKS)
        result = await self._preflight.run(plan, ctx.config)
        await self._store.append_log(
            plan.plan_id,
            f"preflight: {result.summary()}",
            level="info" if result.passed else "warning",
        )
        if not result.passed:
            raise PreflightFailure(
                f"Preflight failed: {result.summary()}",
                plan_id=plan.plan_id,
                project_id=plan.project_id,
                failed_checks=[check.name for check in result.failures],
            )

        await ctx.raise_if_cancelled()
        await self._advance(ctx, MigrationStatus.BACKING_UP)
        ctx.blue = await self._caps.resolve_source(ctx)
        await self._store.update_record(plan.plan_id, blue_env=ctx.blue)
        ctx.backup = await self._caps.backup(ctx)
        await self._store.update_record(plan.plan_id, backup=ctx.backup, rollback_available=True)
        await self._store.append_log(plan.plan_id, f"backup {ctx.backup.backup_id} created")

        for step in plan.steps:
            await ctx.raise_if_cancelled()
            await self._advance(ctx, step.status)
            await self._run_step(ctx, step)

        await ctx.raise_if_cancelled()
        await self._advance(ctx, MigrationStatus.MONITORING)

    async def _advance(self, ctx: ExecutionContext, target: MigrationStatus) -> None:
        """Persist every status between the current one and target, in order."""
        current_index = FORWARD_STATUSES.index(ctx.status)
        target_index = FORWARD_STATUSES.index(target)
        for status in FORWARD_STATUSES[current_index + 1 : target_index + 1]:
            with self._tracer.span(
                "migrator.executor.transition",
                {ATTR_PLAN_ID: str(ctx.plan_id), ATTR_NEW_STATUS: status.value},
            ):
                await self._store.update_status(ctx.plan_id, status)
                ctx.status = status
                await self._store.append_log(ctx.plan_id, f"status: {status.value}")
                logger.debug("Plan %s entered %s", ctx.plan_id, status.value)

    def _cancel_source(self, plan_id: UUID) -> Callable[[], Awaitable[bool]]:
        async def cancel_requested() -> bool:
            record = await self._store.get_record(plan_id)
            return record is not None and record.cancel_requested

        return cancel_requested

    async def _run_step(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        with self._tracer.span(
            "migrator.executor.step",
            {ATTR_PLAN_ID: str(ctx.plan_id), ATTR_STEP_ACTION: step.action.value},
        ):
            await self._store.append_log(ctx.plan_id, f"step: {step.describe()}")
            if step.action.touches_live and not ctx.live_touched:
                ctx.live_touched = True
                await self._store.update_record(ctx.plan_id, live_touched=True)
            await self._handlers[step.action](ctx, step)

    # =========================================================================
    # Step handlers
    # =========================================================================

    async def _provision(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        ctx.green = await self._caps.provision(ctx)
        await self._store.update_record(ctx.plan_id, green_env=ctx.green)
        await self._store.append_log(ctx.plan_id, f"provisioned environment {ctx.green.env_id}")

    async def _bulk_copy(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.bulk_copy(ctx)

    async def _transform_data(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.transform_data(ctx)

    async def _deploy(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.deploy(ctx)

    async def _smoke_test(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._validate(ctx, "pre_cutover")

    async def _verify(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._validate(ctx, "post_cutover")

    async def _validate(self, ctx: ExecutionContext, phase: ValidationPhase) -> None:
        record = await self._store.get_record(ctx.plan_id)
        await self._validator.require(
            ctx.project_id,
            record,
            ctx.require_blue(),
            ctx.require_green(),
            phase=phase,
            sample_size=ctx.config.spot_check_sample_size,
            stage=ctx.status.stage,
        )
        await self._store.append_log(ctx.plan_id, f"validation {phase} passed")

    async def _pause_writes(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.pause_writes(ctx)
        ctx.writes_paused = True

    async def _resume_writes(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.resume_writes(ctx)
        ctx.writes_paused = False

    async def _incremental_sync(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.incremental_sync(ctx)

    async def _mark_shifted(self, ctx: ExecutionContext) -> None:
        if not ctx.traffic_shifted:
            ctx.traffic_shifted = True
            await self._store.update_record(ctx.plan_id, traffic_shifted=True)

    async def _shift_traffic(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._mark_shifted(ctx)
        await self._caps.shift(ctx, int(step.params["percent"]))

    async def _switch_traffic(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._mark_shifted(ctx)
        await self._caps.switch(ctx)

    async def _mirror_traffic(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        ctx.mirroring = True
        await self._caps.mirror(ctx, True)

    async def _stop_mirror(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.mirror(ctx, False)
        ctx.mirroring = False

    async def _watch(self, ctx: ExecutionContext, step: MigrationStep) -> None:
        await self._caps.watch(ctx, float(step.params.get("seconds", 0.0)))

    # =========================================================================
    # Outcomes
    # =========================================================================

    async def _complete(
        self,
        ctx: ExecutionContext,
        strategy: MigrationStrategy,
    ) -> MigrationRecord:
        plan = ctx.plan
        if strategy.cuts_over:
            due_at = datetime.now(UTC) + ctx.config.cleanup_retention
            await self._store.schedule_cleanup(
                CleanupTicket(
                    plan_id=plan.plan_id,
                    project_id=plan.project_id,
                    due_at=due_at,
                    environment=ctx.blue,
                    backup=ctx.backup,
                )
            )
            await self._store.append_log(
                plan.plan_id,
                f"previous environment {ctx.require_blue().env_id} retained until "
                f"{due_at.isoformat()}",
            )
        else:
            green = ctx.require_green()
            await self._caps.destroy(ctx, green)
            if ctx.backup is not None:
                await self._caps.release_backup(ctx, ctx.backup)
            await self._store.update_record(plan.plan_id, rollback_available=False)
            await self._store.append_log(
                plan.plan_id,
                f"rehearsal finished: environment {green.env_id} discarded, backup released",
            )

        record = await self._store.update_status(plan.plan_id, MigrationStatus.COMPLETED)
        await self._store.append_log(plan.plan_id, "status: completed")

        duration = record.duration.total_seconds() if record.duration else None
        self._metrics.record_completed(plan.strategy.value, duration)
        self._dispatcher.dispatch(
            MigrationCompleted(
                plan_id=plan.plan_id,
                project_id=plan.project_id,
                target_version=plan.target_version,
                message=f"Migration to {plan.target_version} completed",
            )
        )
        logger.info(
            "Migration of %s to %s completed (plan %s)",
            plan.project_id,
            plan.target_version,
            plan.plan_id,
        )
        return await self._store.get_record(plan.plan_id) or record

    async def _handle_failure(self, ctx: ExecutionContext, error: Exception) -> MigrationRecord:
        plan = ctx.plan
        with self._tracer.span(
            "migrator.executor.failure",
            {ATTR_PLAN_ID: str(plan.plan_id), ATTR_ERROR_TYPE: type(error).__name__},
        ):
            current = await self._store.get_record(plan.plan_id)
            if current is None or current.status.is_final:
                # Finalized elsewhere (cancelled while pending)
                if current is None:
                    raise MigrationNotFoundError(plan.plan_id) from error
                return current

            if isinstance(error, ExecutionFailure) and error.stage:
                stage = error.stage
            else:
                stage = ctx.status.stage
            reason = error.message if isinstance(error, MigrationError) else str(error)
            reason = reason or type(error).__name__
            cancelled = isinstance(error, CancellationRequested)

            classification = classify_exception(error)
            logger.log(
                classification.severity.log_level,
                "Migration of %s failed at %s (plan %s) [%s]: %s",
                plan.project_id,
                stage,
                plan.plan_id,
                classification.error_code,
                reason,
                exc_info=None if isinstance(error, MigrationError) else error,
            )

            record = await self._store.update_status(
                plan.plan_id, MigrationStatus.FAILED, error=reason, failed_stage=stage
            )
            await self._store.append_log(
                plan.plan_id,
                f"failed at {stage}: {reason}",
                level="error" if classification.severity.should_alert else "warning",
            )

            if ctx.live_touched or (cancelled and ctx.backup is not None):
                try:
                    return await self._rollback.rollback(
                        plan.plan_id, reason=reason, in_flight=True
                    )
                except RollbackFailure:
                    return await self._store.get_record(plan.plan_id) or record

            await self._contain(ctx)
            duration = record.duration.total_seconds() if record.duration else None
            self._metrics.record_failed(plan.strategy.value, stage, duration)
            notification: MigrationCancelled | MigrationFailed
            if cancelled:
                notification = MigrationCancelled(
                    plan_id=plan.plan_id,
                    project_id=plan.project_id,
                    message=f"Migration cancelled at {stage}",
                )
            else:
                notification = MigrationFailed(
                    plan_id=plan.plan_id,
                    project_id=plan.project_id,
                    message=f"Migration failed at {stage}",
                    stage=stage,
                    error=reason,
                    details=classification.to_dict(),
                )
            self._dispatcher.dispatch(notification)
            return await self._store.get_record(plan.plan_id) or record

    async def _contain(self, ctx: ExecutionContext) -> None:
        """Undo the side effects of a failure that never touched the live environment."""
        if ctx.mirroring:
            try:
                await self._caps.mirror(ctx, False)
                ctx.mirroring = False
            except Exception as e:
                logger.error("Failed to stop mirroring for plan %s: %s", ctx.plan_id, e)
                await self._store.append_log(
                    ctx.plan_id, f"could not stop mirroring: {e}", level="error"
                )

        now = datetime.now(UTC)
        if ctx.green is not None:
            try:
                await self._caps.destroy(ctx, ctx.green)
                await self._store.append_log(
                    ctx.plan_id, f"destroyed environment {ctx.green.env_id}"
                )
            except Exception as e:
                logger.error(
                    "Failed to destroy environment %s for plan %s: %s",
                    ctx.green.env_id,
                    ctx.plan_id,
                    e,
                )
                await self._store.append_log(
                    ctx.plan_id,
                    f"could not destroy environment {ctx.green.env_id}: {e}; cleanup scheduled",
                    level="error",
                )
                await self._store.schedule_cleanup(
                    CleanupTicket(
                        plan_id=ctx.plan_id,
                        project_id=ctx.project_id,
                        due_at=now,
                        environment=ctx.green,
                    )
                )

        if ctx.backup is not None:
            due_at = now + ctx.config.cleanup_retention
            await self._store.schedule_cleanup(
                CleanupTicket(
                    plan_id=ctx.plan_id,
                    project_id=ctx.project_id,
                    due_at=due_at,
                    backup=ctx.backup,
                )
            )
            await self._store.append_log(
                ctx.plan_id,
                f"backup {ctx.backup.backup_id} retained until {due_at.isoformat()}",
            )


__all__ = ["MigrationExecutor"]
