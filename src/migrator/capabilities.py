"""
Execution capabilities shared by every strategy.

Strategies differ only in how they compose five capabilities into a step
sequence:

    provision      create the green environment
    replicate      bulk copy, data-shape changes, incremental sync
    deploy         deploy the target version and gate it
    shift traffic  pause/resume writes, shift, switch or mirror traffic
    monitor        health watches and the post-cutover window

This module provides both halves of that contract: step builders that
strategies call to assemble plans, and the Capabilities object the
executor calls to perform each step against the collaborators. Every
collaborator call goes through ErrorHandler so transient outages are
retried with backoff.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar
from uuid import UUID

from migrator.config import EngineConfig
from migrator.exceptions import CancellationRequested, ErrorHandler, ExecutionFailure
from migrator.interfaces import (
    BackupStore,
    Deployer,
    HealthMonitor,
    Provisioner,
    Replicator,
    TrafficRouter,
)
from migrator.models import (
    Backup,
    Environment,
    MigrationPlan,
    MigrationStatus,
    MigrationStep,
    StepAction,
)
from migrator.observability import ATTR_ENVIRONMENT_ID, ATTR_PLAN_ID, Tracer, create_tracer

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Step builders
# =============================================================================


def provision_steps() -> list[MigrationStep]:
    return [MigrationStep(StepAction.PROVISION)]


def replicate_steps() -> list[MigrationStep]:
    """Bulk copy blue to green, then apply the target version's data-shape changes."""
    return [
        MigrationStep(StepAction.BULK_COPY),
        MigrationStep(StepAction.TRANSFORM_DATA),
    ]


def deploy_steps() -> list[MigrationStep]:
    """Deploy the target version and run the pre-cutover smoke/integrity gate."""
    return [
        MigrationStep(StepAction.DEPLOY),
        MigrationStep(StepAction.SMOKE_TEST),
    ]


def cutover_steps() -> list[MigrationStep]:
    """Pause writes, catch up, switch atomically and resume writes on green."""
    return [
        MigrationStep(StepAction.PAUSE_WRITES),
        MigrationStep(StepAction.INCREMENTAL_SYNC),
        MigrationStep(StepAction.SWITCH_TRAFFIC),
        MigrationStep(StepAction.RESUME_WRITES),
    ]


def shift_steps(percent: int, watch_seconds: float, *, sync: bool = False) -> list[MigrationStep]:
    """Move a share of traffic to green and watch its health."""
    steps = [MigrationStep(StepAction.INCREMENTAL_SYNC)] if sync else []
    steps.append(MigrationStep(StepAction.SHIFT_TRAFFIC, {"percent": percent}))
    steps.append(MigrationStep(StepAction.WATCH, {"seconds": watch_seconds}))
    return steps


def mirror_steps(watch_seconds: float) -> list[MigrationStep]:
    return [
        MigrationStep(StepAction.MIRROR_TRAFFIC),
        MigrationStep(StepAction.WATCH, {"seconds": watch_seconds}),
    ]


def monitor_steps(window_seconds: float, *, stop_mirror: bool = False) -> list[MigrationStep]:
    """Observe green for the monitoring window, then validate it."""
    steps = [MigrationStep(StepAction.MONITOR, {"seconds": window_seconds})]
    if stop_mirror:
        steps.append(MigrationStep(StepAction.STOP_MIRROR))
    steps.append(MigrationStep(StepAction.VERIFY))
    return steps


# =============================================================================
# Execution state
# =============================================================================


@dataclass
class ExecutionContext:
    """
    Mutable state of one plan while it executes.

    The executor mirrors the persisted fields (environments, backup and
    the touched/shifted flags) to the State Store as they change.

    A cancel is observed through ``cancel_event`` (set in process) or
    ``cancel_source`` (reads the persisted cancel flag, so a cancel issued
    by another engine sharing the store is seen too).
    """

    plan: MigrationPlan
    config: EngineConfig
    status: MigrationStatus = MigrationStatus.PENDING
    blue: Environment | None = None
    green: Environment | None = None
    backup: Backup | None = None
    live_touched: bool = False
    traffic_shifted: bool = False
    writes_paused: bool = False
    mirroring: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_source: Callable[[], Awaitable[bool]] | None = None
    handler: ErrorHandler = field(init=False)

    def __post_init__(self) -> None:
        self.handler = ErrorHandler(self.config.retry)

    @property
    def plan_id(self) -> UUID:
        return self.plan.plan_id

    @property
    def project_id(self) -> str:
        return self.plan.project_id

    def require_blue(self) -> Environment:
        if self.blue is None:
            raise ExecutionFailure(
                "No source environment resolved",
                stage=self.status.stage,
                plan_id=self.plan_id,
                project_id=self.project_id,
            )
        return self.blue

    def require_green(self) -> Environment:
        if self.green is None:
            raise ExecutionFailure(
                "No target environment provisioned",
                stage=self.status.stage,
                plan_id=self.plan_id,
                project_id=self.project_id,
            )
        return self.green

    async def raise_if_cancelled(self) -> None:
        """
        Raise CancellationRequested if a cancel was requested.

        Raises:
            CancellationRequested: If the in-process event is set or the
                persisted cancel flag is true.
        """
        if not self.cancel_event.is_set() and self.cancel_source is not None:
            if await self.cancel_source():
                self.cancel_event.set()
        if self.cancel_event.is_set():
            raise CancellationRequested(
                "cancelled",
                stage=self.status.stage,
                plan_id=self.plan_id,
                project_id=self.project_id,
            )


# =============================================================================
# Capabilities
# =============================================================================


class Capabilities:
    """
    Performs plan steps against the collaborators.

    Example:
        >>> caps = Capabilities(provisioner, replicator, router, deployer, monitor, backups)
        >>> ctx.green = await caps.provision(ctx)
        >>> await caps.bulk_copy(ctx)
    """

    def __init__(
        self,
        provisioner: Provisioner,
        replicator: Replicator,
        router: TrafficRouter,
        deployer: Deployer,
        health_monitor: HealthMonitor,
        backup_store: BackupStore,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._provisioner = provisioner
        self._replicator = replicator
        self._router = router
        self._deployer = deployer
        self._health_monitor = health_monitor
        self._backup_store = backup_store
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def _call(
        self,
        ctx: ExecutionContext,
        operation_name: str,
        operation: Callable[[], Coroutine[Any, Any, T]],
    ) -> T:
        return await ctx.handler.execute_with_retry(
            operation,
            operation_name,
            plan_id=ctx.plan_id,
        )

    def _failure(self, ctx: ExecutionContext, message: str) -> ExecutionFailure:
        return ExecutionFailure(
            message,
            stage=ctx.status.stage,
            plan_id=ctx.plan_id,
            project_id=ctx.project_id,
        )

    # -- backup / provision ------------------------------------------------

    async def resolve_source(self, ctx: ExecutionContext) -> Environment:
        return await self._call(
            ctx, "current_environment", lambda: self._provisioner.current(ctx.project_id)
        )

    async def backup(self, ctx: ExecutionContext) -> Backup:
        return await self._call(
            ctx, "create_backup", lambda: self._backup_store.create(ctx.project_id)
        )

    async def provision(self, ctx: ExecutionContext) -> Environment:
        with self._tracer.span(
            "migrator.capabilities.provision",
            {ATTR_PLAN_ID: str(ctx.plan_id)},
        ):
            return await self._call(
                ctx,
                "provision",
                lambda: self._provisioner.create(ctx.project_id, ctx.plan.target_version),
            )

    async def destroy(self, ctx: ExecutionContext, env: Environment) -> None:
        with self._tracer.span(
            "migrator.capabilities.destroy",
            {ATTR_ENVIRONMENT_ID: env.env_id},
        ):
            await self._call(ctx, "destroy", lambda: self._provisioner.destroy(env))

    async def release_backup(self, ctx: ExecutionContext, backup: Backup) -> None:
        await self._call(ctx, "discard_backup", lambda: self._backup_store.discard(backup))

    # -- replicate ---------------------------------------------------------

    async def bulk_copy(self, ctx: ExecutionContext) -> None:
        blue, green = ctx.require_blue(), ctx.require_green()
        await self._call(ctx, "bulk_copy", lambda: self._replicator.bulk_copy(blue, green))

    async def transform_data(self, ctx: ExecutionContext) -> None:
        green = ctx.require_green()
        await self._call(
            ctx,
            "apply_data_changes",
            lambda: self._deployer.apply_data_changes(
                green, ctx.plan.source_version, ctx.plan.target_version
            ),
        )

    async def incremental_sync(self, ctx: ExecutionContext) -> None:
        blue, green = ctx.require_blue(), ctx.require_green()
        await self._call(
            ctx, "incremental_sync", lambda: self._replicator.incremental_sync(blue, green)
        )

    # -- deploy ------------------------------------------------------------

    async def deploy(self, ctx: ExecutionContext) -> None:
        green = ctx.require_green()
        await self._call(
            ctx, "deploy", lambda: self._deployer.deploy(green, ctx.plan.target_version)
        )

    # -- shift traffic -----------------------------------------------------

    async def pause_writes(self, ctx: ExecutionContext) -> None:
        blue = ctx.require_blue()
        await self._call(ctx, "pause_writes", lambda: self._router.pause_writes(blue))

    async def resume_writes(self, ctx: ExecutionContext) -> None:
        green = ctx.require_green()
        await self._call(ctx, "resume_writes", lambda: self._router.resume_writes(green))

    async def switch(self, ctx: ExecutionContext) -> None:
        blue, green = ctx.require_blue(), ctx.require_green()
        switched = await self._call(ctx, "switch", lambda: self._router.switch(blue, green))
        if not switched:
            raise self._failure(ctx, f"Traffic router refused switch to {green.env_id}")

    async def shift(self, ctx: ExecutionContext, percent: int) -> None:
        blue, green = ctx.require_blue(), ctx.require_green()
        shifted = await self._call(
            ctx, "shift", lambda: self._router.shift(blue, green, percent)
        )
        if not shifted:
            raise self._failure(
                ctx, f"Traffic router refused shift of {percent}% to {green.env_id}"
            )

    async def mirror(self, ctx: ExecutionContext, enabled: bool) -> None:
        blue, green = ctx.require_blue(), ctx.require_green()
        await self._call(ctx, "mirror", lambda: self._router.mirror(blue, green, enabled))

    # -- monitor -----------------------------------------------------------

    async def watch(self, ctx: ExecutionContext, seconds: float) -> None:
        """
        Poll the health monitor until the window elapses.

        An unhealthy report fails the step and a healthy conclusive report
        ends the window early. Reaching the end of the window without a
        failure is a pass. A cancel interrupts the wait between polls.

        Raises:
            ExecutionFailure: If the monitor reports the environment unhealthy.
            CancellationRequested: If the plan is cancelled during the window.
        """
        env = ctx.require_green()
        poll = ctx.config.monitoring_poll_interval_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        checks = 0

        while True:
            await ctx.raise_if_cancelled()
            report = await self._call(ctx, "health_check", lambda: self._health_monitor.check(env))
            checks += 1
            if not report.healthy:
                raise self._failure(
                    ctx, f"Health check failed: {report.reason or 'unhealthy'}"
                )
            if report.conclusive:
                logger.debug(
                    "Conclusive healthy report for plan %s after %d check(s)",
                    ctx.plan_id,
                    checks,
                )
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(ctx.cancel_event.wait(), timeout=min(poll, remaining))
            except TimeoutError:
                # Poll interval elapsed
                pass


__all__ = [
    "Capabilities",
    "ExecutionContext",
    "provision_steps",
    "replicate_steps",
    "deploy_steps",
    "cutover_steps",
    "shift_steps",
    "mirror_steps",
    "monitor_steps",
]
