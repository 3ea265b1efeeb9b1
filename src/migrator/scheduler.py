"""
Bulk Scheduler: runs many plans under a concurrency ceiling.

Plans are ordered cheapest first by their estimated duration and split
into dispatch batches of ``concurrency`` plans. Each batch runs fully
concurrently and the next batch starts only when every plan of the
current one has finished, so no more than ``concurrency`` plans are ever
in flight.

After each batch the failure rate of that batch alone is compared with
the threshold. When it is exceeded and plans remain, the
scheduler halts: the submission is persisted as aborted, every plan that
was never dispatched is marked FAILED at stage "pending" with reason
"batch aborted", and the partial result is returned.

A failing plan never affects its siblings; the executor keeps each
plan's failure inside its own record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from migrator.exceptions import InvalidStatusTransitionError
from migrator.executor import MigrationExecutor
from migrator.metrics import EngineMetrics
from migrator.models import (
    BatchRecord,
    BatchResult,
    BatchStatus,
    MigrationPlan,
    MigrationRecord,
    MigrationStatus,
)
from migrator.notifications import BatchCompleted, BatchHalted, NotificationDispatcher
from migrator.observability import (
    ATTR_BATCH_ID,
    ATTR_BATCH_SIZE,
    ATTR_CONCURRENCY,
    ATTR_FAILURE_RATE,
    Tracer,
    create_tracer,
)
from migrator.stores import StateStore

logger = logging.getLogger(__name__)

BATCH_ABORTED_REASON = "batch aborted"


def order_plans(plans: Sequence[MigrationPlan]) -> list[MigrationPlan]:
    """Sort plans ascending by estimated duration (project id breaks ties)."""
    return sorted(plans, key=lambda plan: (plan.estimated_duration_seconds, plan.project_id))


def split_batches(plans: Sequence[MigrationPlan], size: int) -> list[list[MigrationPlan]]:
    if size < 1:
        raise ValueError(f"Batch size must be at least 1, got {size}")
    return [list(plans[i : i + size]) for i in range(0, len(plans), size)]


class BulkScheduler:
    """
    Dispatches the plans of a bulk submission.

    Example:
        >>> scheduler = BulkScheduler(store, executor)
        >>> result = await scheduler.run(batch, plans, threshold=0.2)
        >>> result.aborted, len(result.not_started)
        (True, 6)
    """

    def __init__(
        self,
        store: StateStore,
        executor: MigrationExecutor,
        dispatcher: NotificationDispatcher | None = None,
        metrics: EngineMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._executor = executor
        self._dispatcher = dispatcher or NotificationDispatcher()
        self._metrics = metrics or EngineMetrics(enable_metrics=False)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def run(
        self,
        batch: BatchRecord,
        plans: Sequence[MigrationPlan],
        *,
        threshold: float,
    ) -> BatchResult:
        """
        Run a bulk submission to completion or until halted.

        Args:
            batch: The persisted submission (its concurrency is the ceiling).
            plans: Plans of the submission; records must already exist.
            threshold: Failure rate above which dispatch halts.

        Returns:
            BatchResult over the dispatched plans.
        """
        ordered = order_plans(plans)
        batches = split_batches(ordered, batch.concurrency)

        with self._tracer.span(
            "migrator.scheduler.run",
            {
                ATTR_BATCH_ID: str(batch.batch_id),
                ATTR_BATCH_SIZE: len(ordered),
                ATTR_CONCURRENCY: batch.concurrency,
            },
        ):
            logger.info(
                "Dispatching bulk submission %s: %d plan(s) in %d batch(es) of up to %d",
                batch.batch_id,
                len(ordered),
                len(batches),
                batch.concurrency,
            )

            records: list[MigrationRecord] = []
            successful = failed = 0
            for index, current in enumerate(batches):
                outcomes = await self._run_batch(batch, index, current)
                batch_failed = 0
                for outcome in outcomes:
                    records.append(outcome)
                    if outcome.status == MigrationStatus.COMPLETED:
                        successful += 1
                    else:
                        failed += 1
                        batch_failed += 1

                # Rate of the batch just finished
                rate = batch_failed / len(outcomes) if outcomes else 0.0
                remaining = [plan for later in batches[index + 1 :] for plan in later]
                if remaining and rate > threshold:
                    not_started = await self._halt(batch, remaining, rate, threshold)
                    return BatchResult(
                        batch_id=batch.batch_id,
                        total=len(ordered),
                        successful=successful,
                        failed=failed,
                        not_started=tuple(plan.plan_id for plan in not_started),
                        aborted=True,
                        abort_reason=batch.abort_reason,
                        records=tuple(records),
                    )

            batch.status = BatchStatus.COMPLETED
            batch.completed_at = datetime.now(UTC)
            await self._store.finish_batch(batch)
            self._dispatcher.dispatch(
                BatchCompleted(
                    batch_id=batch.batch_id,
                    successful=successful,
                    failed=failed,
                    message=f"Bulk migration to {batch.target_version} finished",
                )
            )
            logger.info(
                "Bulk submission %s finished: %d succeeded, %d failed",
                batch.batch_id,
                successful,
                failed,
            )
            return BatchResult(
                batch_id=batch.batch_id,
                total=len(ordered),
                successful=successful,
                failed=failed,
                records=tuple(records),
            )

    async def _run_batch(
        self,
        batch: BatchRecord,
        index: int,
        plans: list[MigrationPlan],
    ) -> list[MigrationRecord]:
        with self._tracer.span(
            "migrator.scheduler.batch",
            {ATTR_BATCH_ID: str(batch.batch_id), ATTR_BATCH_SIZE: len(plans)},
        ):
            logger.debug(
                "Bulk submission %s: dispatching batch %d (%d plan(s))",
                batch.batch_id,
                index + 1,
                len(plans),
            )
            outcomes = await asyncio.gather(
                *(self._executor.execute(plan) for plan in plans),
                return_exceptions=True,
            )

            records: list[MigrationRecord] = []
            for plan, outcome in zip(plans, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "Plan %s for project %s raised outside its record: %s",
                        plan.plan_id,
                        plan.project_id,
                        outcome,
                        exc_info=outcome,
                    )
                    record = await self._store.get_record(plan.plan_id)
                    if record is None:
                        record = MigrationRecord.for_plan(plan)
                        record.status = MigrationStatus.FAILED
                        record.error = str(outcome) or type(outcome).__name__
                    records.append(record)
                else:
                    records.append(outcome)
            return records

    async def _halt(
        self,
        batch: BatchRecord,
        remaining: list[MigrationPlan],
        rate: float,
        threshold: float,
    ) -> list[MigrationPlan]:
        with self._tracer.span(
            "migrator.scheduler.halt",
            {ATTR_BATCH_ID: str(batch.batch_id), ATTR_FAILURE_RATE: rate},
        ):
            batch.status = BatchStatus.ABORTED
            batch.not_started = [plan.plan_id for plan in remaining]
            batch.abort_reason = (
                f"batch failure rate {rate:.0%} exceeded threshold {threshold:.0%}"
            )
            batch.completed_at = datetime.now(UTC)
            await self._store.finish_batch(batch)

            logger.warning(
                "Halting bulk submission %s: %s; %d plan(s) not started",
                batch.batch_id,
                batch.abort_reason,
                len(remaining),
            )

            for plan in remaining:
                try:
                    await self._store.update_status(
                        plan.plan_id,
                        MigrationStatus.FAILED,
                        error=BATCH_ABORTED_REASON,
                        failed_stage="pending",
                    )
                except InvalidStatusTransitionError:
                    # Cancelled before the halt
                    continue
                await self._store.append_log(
                    plan.plan_id, f"failed at pending: {BATCH_ABORTED_REASON}", level="error"
                )
                self._metrics.record_failed(plan.strategy.value, "pending", in_flight=False)

            self._metrics.record_batch_halted(batch.strategy.value)
            self._dispatcher.dispatch(
                BatchHalted(
                    batch_id=batch.batch_id,
                    failure_rate=rate,
                    not_started=len(remaining),
                    message=f"Bulk migration to {batch.target_version} halted: "
                    f"{batch.abort_reason}",
                )
            )
            return remaining


__all__ = ["BulkScheduler", "BATCH_ABORTED_REASON", "order_plans", "split_batches"]
