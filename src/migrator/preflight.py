"""
Preflight Checker: read-only readiness checks run before any mutation.

Built-in checks:
    backup_freshness           the latest backup exists and is younger than
                               backup_max_age
    resource_quota             the provisioner can fit the plan's resource units
    no_conflicting_deployment  no deployment is queued or running for the project
    source_reachable           the replicator can reach the current environment
    steps_valid                the plan's steps are structurally valid

Checks run concurrently. A check that raises counts as failed, with the
exception text as its reason. More checks can be added with register().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from migrator.config import EngineConfig
from migrator.interfaces import BackupStore, Deployer, Provisioner, Replicator
from migrator.models import CheckResult, MigrationPlan, PreflightResult
from migrator.observability import (
    ATTR_CHECK_NAME,
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    Tracer,
    create_tracer,
)
from migrator.strategies import StrategyRegistry, default_registry, validate_steps

logger = logging.getLogger(__name__)

# A check answers pass/fail, optionally with a reason via CheckResult
PreflightCheck = Callable[[MigrationPlan, EngineConfig], Awaitable[bool | CheckResult]]


class PreflightChecker:
    """
    Runs the named set of readiness checks for a plan.

    Example:
        >>> checker = PreflightChecker(backups, provisioner, replicator, deployer)
        >>> checker.register("maintenance_window", in_maintenance_window)
        >>> result = await checker.run(plan, config)
        >>> result.passed
        True
    """

    def __init__(
        self,
        backup_store: BackupStore,
        provisioner: Provisioner,
        replicator: Replicator,
        deployer: Deployer,
        registry: StrategyRegistry | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._backup_store = backup_store
        self._provisioner = provisioner
        self._replicator = replicator
        self._deployer = deployer
        self._registry = registry or default_registry
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._checks: dict[str, PreflightCheck] = {
            "backup_freshness": self._check_backup_freshness,
            "resource_quota": self._check_resource_quota,
            "no_conflicting_deployment": self._check_no_conflicting_deployment,
            "source_reachable": self._check_source_reachable,
            "steps_valid": self._check_steps_valid,
        }

    @property
    def check_names(self) -> list[str]:
        return list(self._checks)

    def register(self, name: str, check: PreflightCheck) -> None:
        """
        Add a named check.

        Raises:
            ValueError: If a check with that name already exists.
        """
        if name in self._checks:
            raise ValueError(f"Preflight check already registered: {name}")
        self._checks[name] = check

    def unregister(self, name: str) -> None:
        self._checks.pop(name, None)

    async def run(self, plan: MigrationPlan, config: EngineConfig) -> PreflightResult:
        """
        Run every check concurrently.

        Args:
            plan: The plan about to execute.
            config: Effective configuration for the plan.

        Returns:
            PreflightResult; passed only if every check passed.
        """
        with self._tracer.span(
            "migrator.preflight.run",
            {
                ATTR_PLAN_ID: str(plan.plan_id),
                ATTR_PROJECT_ID: plan.project_id,
            },
        ):
            results = await asyncio.gather(
                *(
                    self._run_check(name, check, plan, config)
                    for name, check in self._checks.items()
                )
            )
            result = PreflightResult(checks=tuple(results))
            if result.passed:
                logger.info("Preflight passed for plan %s (%d checks)", plan.plan_id, len(results))
            else:
                logger.warning(
                    "Preflight failed for plan %s: %s",
                    plan.plan_id,
                    result.summary(),
                )
            return result

    async def _run_check(
        self,
        name: str,
        check: PreflightCheck,
        plan: MigrationPlan,
        config: EngineConfig,
    ) -> CheckResult:
        with self._tracer.span(
            "migrator.preflight.check",
            {ATTR_PLAN_ID: str(plan.plan_id), ATTR_CHECK_NAME: name},
        ):
            try:
                outcome = await check(plan, config)
            except Exception as e:
                logger.warning(
                    "Preflight check %s raised for plan %s: %s",
                    name,
                    plan.plan_id,
                    e,
                )
                return CheckResult(name=name, passed=False, reason=str(e) or type(e).__name__)

            if isinstance(outcome, CheckResult):
                return CheckResult(name=name, passed=outcome.passed, reason=outcome.reason)
            return CheckResult(
                name=name,
                passed=bool(outcome),
                reason=None if outcome else "check returned false",
            )

    # =========================================================================
    # Built-in checks
    # =========================================================================

    async def _check_backup_freshness(
        self, plan: MigrationPlan, config: EngineConfig
    ) -> CheckResult:
        backup = await self._backup_store.recent(plan.project_id)
        if backup is None:
            return CheckResult("backup_freshness", False, "no backup exists")
        age = backup.age(datetime.now(UTC))
        if age > config.backup_max_age:
            hours = age.total_seconds() / 3600
            return CheckResult(
                "backup_freshness",
                False,
                f"latest backup is {hours:.1f}h old (max {config.backup_max_age_hours:g}h)",
            )
        return CheckResult("backup_freshness", True)

    async def _check_resource_quota(self, plan: MigrationPlan, config: EngineConfig) -> CheckResult:
        available = await self._provisioner.available_capacity(plan.project_id)
        if available < plan.resource_units:
            return CheckResult(
                "resource_quota",
                False,
                f"needs {plan.resource_units} resource unit(s), {available} available",
            )
        return CheckResult("resource_quota", True)

    async def _check_no_conflicting_deployment(
        self, plan: MigrationPlan, config: EngineConfig
    ) -> CheckResult:
        if await self._deployer.has_pending_deployment(plan.project_id):
            return CheckResult(
                "no_conflicting_deployment", False, "a deployment is pending for the project"
            )
        return CheckResult("no_conflicting_deployment", True)

    async def _check_source_reachable(
        self, plan: MigrationPlan, config: EngineConfig
    ) -> CheckResult:
        env = await self._provisioner.current(plan.project_id)
        if not await self._replicator.is_reachable(env):
            return CheckResult(
                "source_reachable", False, f"environment {env.env_id} is unreachable"
            )
        return CheckResult("source_reachable", True)

    async def _check_steps_valid(self, plan: MigrationPlan, config: EngineConfig) -> CheckResult:
        strategy = self._registry.get(plan.strategy) if plan.strategy in self._registry else None
        problems = validate_steps(plan.steps, strategy)
        if strategy is None:
            problems.insert(0, f"unknown strategy {plan.strategy.value}")
        if problems:
            return CheckResult("steps_valid", False, "; ".join(problems))
        return CheckResult("steps_valid", True)


__all__ = ["PreflightChecker", "PreflightCheck"]
