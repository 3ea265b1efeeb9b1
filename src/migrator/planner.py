"""
Plan construction.

Turns a MigrationRequest into an immutable MigrationPlan: resolves the
project's current environment and version, asks the strategy for its step
sequence under the plan's effective configuration and estimates the
duration used by the bulk scheduler to order work cheapest first.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID, uuid4

from migrator.config import EngineConfig
from migrator.interfaces import DataInspector, Provisioner
from migrator.models import MigrationPlan, MigrationRequest, RollbackPlan
from migrator.observability import ATTR_PROJECT_ID, ATTR_STRATEGY, Tracer, create_tracer
from migrator.strategies import StrategyRegistry, default_registry

logger = logging.getLogger(__name__)


def effective_config(
    base: EngineConfig,
    target_version: str,
    overrides: dict[str, Any] | None = None,
) -> EngineConfig:
    """Apply version overrides, then per-request overrides, to the engine config."""
    config = base.for_version(target_version)
    if overrides:
        config = config.with_overrides(**overrides)
    return config


class MigrationPlanner:
    """
    Builds plans for migration requests.

    Example:
        >>> planner = MigrationPlanner(provisioner, inspector, EngineConfig())
        >>> plan = await planner.build(MigrationRequest("p1", "v2"))
        >>> plan.source_version
        'v1'
    """

    def __init__(
        self,
        provisioner: Provisioner,
        inspector: DataInspector,
        config: EngineConfig,
        registry: StrategyRegistry | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._provisioner = provisioner
        self._inspector = inspector
        self._config = config
        self._registry = registry or default_registry
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def build(
        self,
        request: MigrationRequest,
        *,
        batch_id: UUID | None = None,
    ) -> MigrationPlan:
        """
        Build the plan for one request.

        Raises:
            KeyError: If the strategy is not registered.
            ValueError: If the request's overrides are invalid.
        """
        with self._tracer.span(
            "migrator.planner.build",
            {
                ATTR_PROJECT_ID: request.project_id,
                ATTR_STRATEGY: request.strategy.value,
            },
        ):
            config = effective_config(self._config, request.target_version, request.overrides)
            strategy = self._registry.get(request.strategy)

            source = await self._provisioner.current(request.project_id)
            counts = await self._inspector.record_counts(source)
            steps = strategy.build_steps(config)

            copy_seconds = sum(counts.values()) / config.copy_rate_records_per_second
            estimate = copy_seconds + strategy.estimate_seconds(steps)

            plan = MigrationPlan(
                plan_id=uuid4(),
                project_id=request.project_id,
                source_version=source.version,
                target_version=request.target_version,
                strategy=request.strategy,
                steps=steps,
                estimated_duration_seconds=estimate,
                rollback_plan=RollbackPlan(restore_version=source.version),
                resource_units=config.environment_resource_units,
                batch_id=batch_id,
                config_overrides=dict(request.overrides),
            )
            logger.debug(
                "Planned %s migration of %s from %s to %s (%d steps, ~%.0fs)",
                request.strategy.value,
                request.project_id,
                source.version,
                request.target_version,
                len(steps),
                estimate,
            )
            return plan


__all__ = ["MigrationPlanner", "effective_config"]
