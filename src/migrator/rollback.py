"""
Rollback Coordinator: restores a project to its pre-migration state.

Rollback sequence:
    1. Pause writes on whichever environment currently takes them
    2. Restore the backup into the original environment
    3. Redeploy the original version onto it
    4. Route traffic back to it, if any traffic had moved
    5. Resume writes on it
    6. Destroy the partially migrated environment
    7. Mark the record ROLLED_BACK (rolled_back=True, rollback_available=False)
    8. Release the backup and notify

Rollback is idempotent: a record already ROLLED_BACK is returned as-is
with no side effects, and concurrent calls for one plan are serialized.
If any step fails the record stays FAILED, the failure is logged at
CRITICAL, operators are notified and RollbackFailure is raised.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from uuid import UUID

from migrator.exceptions import (
    ErrorHandler,
    InvalidStatusTransitionError,
    MigrationError,
    MigrationNotFoundError,
    RetryConfig,
    RollbackFailure,
    classify_exception,
)
from migrator.interfaces import BackupStore, Deployer, Provisioner, TrafficRouter
from migrator.metrics import EngineMetrics
from migrator.models import MigrationRecord, MigrationStatus
from migrator.notifications import (
    MigrationRolledBack,
    NotificationDispatcher,
    RollbackFailed,
)
from migrator.observability import (
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    Tracer,
    create_tracer,
)
from migrator.stores import StateStore

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    """
    Restores prior state for failed migrations.

    Example:
        >>> coordinator = RollbackCoordinator(store, backups, provisioner, router, deployer)
        >>> record = await coordinator.rollback(plan_id, reason="health check failed")
        >>> record.status
        <MigrationStatus.ROLLED_BACK: 'rolled_back'>
    """

    def __init__(
        self,
        store: StateStore,
        backup_store: BackupStore,
        provisioner: Provisioner,
        router: TrafficRouter,
        deployer: Deployer,
        dispatcher: NotificationDispatcher | None = None,
        metrics: EngineMetrics | None = None,
        retry_config: RetryConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._backup_store = backup_store
        self._provisioner = provisioner
        self._router = router
        self._deployer = deployer
        self._dispatcher = dispatcher or NotificationDispatcher()
        self._metrics = metrics or EngineMetrics(enable_metrics=False)
        self._handler = ErrorHandler(retry_config)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, plan_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(plan_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[plan_id] = lock
        return lock

    async def rollback(
        self,
        plan_id: UUID,
        *,
        reason: str | None = None,
        in_flight: bool = False,
    ) -> MigrationRecord:
        """
        Roll back a failed migration.

        Args:
            plan_id: Plan to roll back.
            reason: Why the rollback runs (recorded in the log trail).
            in_flight: True when called by the executor for a plan it is
                still running. Only then, or once the live environment was
                touched, is the green environment still standing.

        Returns:
            The ROLLED_BACK record.

        Raises:
            MigrationNotFoundError: If the record does not exist.
            InvalidStatusTransitionError: If the record is neither FAILED
                nor ROLLED_BACK.
            MigrationError: If no backup is held for the record.
            RollbackFailure: If any rollback step failed.
        """
        with self._tracer.span(
            "migrator.rollback.rollback",
            {ATTR_PLAN_ID: str(plan_id)},
        ):
            async with self._lock_for(plan_id):
                record = await self._store.get_record(plan_id)
                if record is None:
                    raise MigrationNotFoundError(plan_id)

                if record.status == MigrationStatus.ROLLED_BACK:
                    logger.debug("Plan %s already rolled back", plan_id)
                    return record

                if record.status != MigrationStatus.FAILED:
                    raise InvalidStatusTransitionError(
                        plan_id, record.status, MigrationStatus.ROLLED_BACK
                    )

                if record.backup is None or not record.rollback_available:
                    raise MigrationError(
                        "No backup is held for this migration; nothing to restore",
                        plan_id=plan_id,
                        project_id=record.project_id,
                    )

                return await self._run(record, reason, in_flight)

    async def _run(
        self,
        record: MigrationRecord,
        reason: str | None,
        in_flight: bool,
    ) -> MigrationRecord:
        plan_id = record.plan_id
        backup = record.backup
        assert backup is not None

        logger.info(
            "Rolling back plan %s for project %s: %s",
            plan_id,
            record.project_id,
            reason or "requested",
        )
        await self._store.append_log(
            plan_id, f"rollback started: {reason or 'requested'}", level="warning"
        )

        with self._tracer.span(
            "migrator.rollback.restore",
            {ATTR_PLAN_ID: str(plan_id), ATTR_PROJECT_ID: record.project_id},
        ):
            try:
                await self._restore(record, in_flight)
            except Exception as e:
                failure = RollbackFailure(
                    f"Rollback failed: {e}",
                    plan_id=plan_id,
                    project_id=record.project_id,
                    cause=e,
                )
                await self._escalate(record, failure, in_flight)
                raise failure from e

        updated = await self._store.update_status(plan_id, MigrationStatus.ROLLED_BACK)
        await self._store.append_log(
            plan_id, f"rolled back to version {record.source_version}", level="warning"
        )

        try:
            await self._backup_store.discard(backup)
        except Exception as e:
            logger.warning(
                "Failed to release backup %s after rolling back plan %s: %s",
                backup.backup_id,
                plan_id,
                e,
            )
            await self._store.append_log(
                plan_id, f"backup {backup.backup_id} not released: {e}", level="warning"
            )

        duration = updated.duration.total_seconds() if updated.duration else None
        self._metrics.record_rolled_back(updated.strategy.value, duration, in_flight=in_flight)
        self._dispatcher.dispatch(
            MigrationRolledBack(
                plan_id=plan_id,
                project_id=record.project_id,
                message=f"Migration to {record.target_version} rolled back",
                stage=record.failed_stage,
                error=record.error,
            )
        )
        return await self._store.get_record(plan_id) or updated

    async def _restore(self, record: MigrationRecord, in_flight: bool) -> None:
        """Run the restore steps; any exception aborts the rollback."""
        plan_id = record.plan_id
        backup = record.backup
        assert backup is not None

        blue = record.blue_env
        if blue is None:
            blue = await self._handler.execute_with_retry(
                lambda: self._provisioner.current(record.project_id),
                "current_environment",
                plan_id=plan_id,
            )
        green = record.green_env
        writing = green if record.traffic_shifted and green is not None else blue

        await self._handler.execute_with_retry(
            lambda: self._router.pause_writes(writing), "pause_writes", plan_id=plan_id
        )
        await self._handler.execute_with_retry(
            lambda: self._backup_store.restore(record.project_id, backup),
            "restore_backup",
            plan_id=plan_id,
        )
        await self._handler.execute_with_retry(
            lambda: self._deployer.deploy(blue, record.source_version),
            "redeploy",
            plan_id=plan_id,
        )
        if record.traffic_shifted and green is not None:
            switched = await self._handler.execute_with_retry(
                lambda: self._router.switch(green, blue), "switch_back", plan_id=plan_id
            )
            if not switched:
                raise MigrationError(
                    f"Traffic router refused switch back to {blue.env_id}",
                    plan_id=plan_id,
                    project_id=record.project_id,
                )
        await self._handler.execute_with_retry(
            lambda: self._router.resume_writes(blue), "resume_writes", plan_id=plan_id
        )
        # A contained failure already destroyed green (or scheduled it)
        if green is not None and (record.live_touched or in_flight):
            await self._handler.execute_with_retry(
                lambda: self._provisioner.destroy(green), "destroy", plan_id=plan_id
            )

    async def _escalate(
        self,
        record: MigrationRecord,
        failure: RollbackFailure,
        in_flight: bool,
    ) -> None:
        classification = classify_exception(failure)
        message = failure.message
        logger.log(
            classification.severity.log_level,
            "Rollback of plan %s for project %s failed [%s]: %s. %s",
            record.plan_id,
            record.project_id,
            classification.error_code,
            failure.cause,
            classification.suggested_action,
            exc_info=failure.cause,
        )
        await self._store.update_record(record.plan_id, error=message)
        await self._store.append_log(record.plan_id, message, level="critical")
        self._metrics.record_rollback_failure(record.strategy.value)
        if in_flight:
            self._metrics.record_failed(
                record.strategy.value,
                record.failed_stage or "rollback",
                record.duration.total_seconds() if record.duration else None,
            )
        self._dispatcher.dispatch(
            RollbackFailed(
                plan_id=record.plan_id,
                project_id=record.project_id,
                message="Rollback failed; the project may be in an undefined state",
                error=str(failure.cause),
                details=classification.to_dict(),
            )
        )


__all__ = ["RollbackCoordinator"]
