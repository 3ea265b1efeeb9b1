"""
Execution strategies.

Each strategy is a class that composes the shared capabilities into an
ordered step sequence. Strategies are looked up by name in a
StrategyRegistry handed to the engine, so a deployment can swap in its
own implementation without touching the executor or the other strategies:

    >>> class SlowCanary(CanaryStrategy):
    ...     def build_steps(self, config):
    ...         return super().build_steps(config.with_overrides(canary_steps=(1, 5, 25)))
    >>> registry = create_default_registry()
    >>> registry.register(SlowCanary(), replace=True)

Every step action belongs to exactly one status (see StepAction.status);
validate_steps() checks that a sequence never moves backwards through the
state graph, which is what lets the executor interpret any strategy's
steps with the same state machine.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from migrator.capabilities import (
    cutover_steps,
    deploy_steps,
    mirror_steps,
    monitor_steps,
    provision_steps,
    replicate_steps,
    shift_steps,
)
from migrator.config import EngineConfig
from migrator.models import FORWARD_STATUSES, MigrationStep, StepAction, Strategy

logger = logging.getLogger(__name__)

# Seconds assumed per step that has no explicit duration, for estimates only
STEP_OVERHEAD_SECONDS = 30.0

_TRAFFIC_ACTIONS = frozenset(
    {
        StepAction.PAUSE_WRITES,
        StepAction.SHIFT_TRAFFIC,
        StepAction.SWITCH_TRAFFIC,
        StepAction.MIRROR_TRAFFIC,
    }
)


class MigrationStrategy(ABC):
    """
    Base class for execution strategies.

    Attributes:
        name: Registry key (a Strategy value for the built-in strategies).
        cuts_over: Whether production traffic ends up on the new environment.
            When False the run is a rehearsal: the new environment is
            discarded after a successful run.
        required_actions: Actions every plan of this strategy must contain.
    """

    name: str = ""
    cuts_over: bool = True
    required_actions: frozenset[StepAction] = frozenset(
        {
            StepAction.PROVISION,
            StepAction.BULK_COPY,
            StepAction.DEPLOY,
            StepAction.SMOKE_TEST,
            StepAction.MONITOR,
            StepAction.VERIFY,
        }
    )

    @abstractmethod
    def build_steps(self, config: EngineConfig) -> tuple[MigrationStep, ...]:
        """Build the ordered step sequence for one plan."""

    def prepare_steps(self) -> list[MigrationStep]:
        """Preparation shared by every strategy: provision, replicate, deploy, gate."""
        return [*provision_steps(), *replicate_steps(), *deploy_steps()]

    def estimate_seconds(self, steps: tuple[MigrationStep, ...]) -> float:
        """Scheduling estimate for the strategy's own steps (data copy excluded)."""
        total = 0.0
        for step in steps:
            seconds = step.params.get("seconds")
            total += float(seconds) if seconds is not None else STEP_OVERHEAD_SECONDS
        return total

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class BlueGreenStrategy(MigrationStrategy):
    """Full copy, then a single atomic switch under a short write pause."""

    name = Strategy.BLUE_GREEN.value
    required_actions = MigrationStrategy.required_actions | {
        StepAction.PAUSE_WRITES,
        StepAction.SWITCH_TRAFFIC,
        StepAction.RESUME_WRITES,
    }

    def build_steps(self, config: EngineConfig) -> tuple[MigrationStep, ...]:
        return (
            *self.prepare_steps(),
            *cutover_steps(),
            *monitor_steps(config.monitoring_window_seconds),
        )


class RollingStrategy(MigrationStrategy):
    """
    Gradual replacement: traffic moves to green in increments.

    Each increment is preceded by an incremental sync and followed by a
    health watch. Writes are never paused.
    """

    name = Strategy.ROLLING.value
    required_actions = MigrationStrategy.required_actions | {StepAction.SHIFT_TRAFFIC}

    def build_steps(self, config: EngineConfig) -> tuple[MigrationStep, ...]:
        steps = self.prepare_steps()
        for percent in config.rolling_steps:
            steps.extend(shift_steps(percent, config.health_watch_seconds, sync=True))
        steps.extend(monitor_steps(config.monitoring_window_seconds))
        return tuple(steps)


class CanaryStrategy(MigrationStrategy):
    """
    Small traffic shares first, then promotion.

    Promotion pauses writes, syncs, switches and resumes, like blue-green.
    """

    name = Strategy.CANARY.value
    required_actions = BlueGreenStrategy.required_actions | {StepAction.SHIFT_TRAFFIC}

    def build_steps(self, config: EngineConfig) -> tuple[MigrationStep, ...]:
        steps = self.prepare_steps()
        for percent in config.canary_steps:
            steps.extend(shift_steps(percent, config.health_watch_seconds))
        steps.extend(cutover_steps())
        steps.extend(monitor_steps(config.monitoring_window_seconds))
        return tuple(steps)


class ShadowStrategy(MigrationStrategy):
    """
    Rehearsal: read traffic is mirrored to green for comparison.

    No switch happens and writes are never paused. On success the green
    environment is discarded and the backup released.
    """

    name = Strategy.SHADOW.value
    cuts_over = False
    required_actions = MigrationStrategy.required_actions | {
        StepAction.MIRROR_TRAFFIC,
        StepAction.STOP_MIRROR,
    }

    def build_steps(self, config: EngineConfig) -> tuple[MigrationStep, ...]:
        return (
            *self.prepare_steps(),
            *mirror_steps(config.health_watch_seconds),
            *monitor_steps(config.monitoring_window_seconds, stop_mirror=True),
        )


class StrategyRegistry:
    """
    Maps strategy names to strategy instances.

    Example:
        >>> registry = StrategyRegistry()
        >>> registry.register(BlueGreenStrategy())
        >>> registry.get("blue_green").cuts_over
        True
    """

    def __init__(self) -> None:
        self._strategies: dict[str, MigrationStrategy] = {}

    def register(self, strategy: MigrationStrategy, *, replace: bool = False) -> None:
        """
        Register a strategy under its name.

        Raises:
            ValueError: If the name is empty or already registered (unless replace).
        """
        if not strategy.name:
            raise ValueError(f"{type(strategy).__name__} has no name")
        if strategy.name in self._strategies and not replace:
            raise ValueError(f"Strategy already registered: {strategy.name}")
        self._strategies[strategy.name] = strategy
        logger.debug("Registered strategy %s", strategy.name)

    def get(self, name: Strategy | str) -> MigrationStrategy:
        """
        Look up a strategy.

        Raises:
            KeyError: If no strategy is registered under the name.
        """
        key = name.value if isinstance(name, Strategy) else name
        try:
            return self._strategies[key]
        except KeyError:
            raise KeyError(f"Unknown strategy: {key}") from None

    def names(self) -> list[str]:
        return sorted(self._strategies)

    def __contains__(self, name: object) -> bool:
        key = name.value if isinstance(name, Strategy) else name
        return key in self._strategies


def create_default_registry() -> StrategyRegistry:
    """Create a registry holding the four built-in strategies."""
    registry = StrategyRegistry()
    for strategy in (BlueGreenStrategy(), RollingStrategy(), CanaryStrategy(), ShadowStrategy()):
        registry.register(strategy)
    return registry


default_registry = create_default_registry()


def validate_steps(
    steps: tuple[MigrationStep, ...],
    strategy: MigrationStrategy | None = None,
) -> list[str]:
    """
    Check that a step sequence is structurally valid.

    Returns:
        Human-readable problems; empty when the sequence is valid.
    """
    if not steps:
        return ["plan has no steps"]

    problems: list[str] = []
    order = {status: index for index, status in enumerate(FORWARD_STATUSES)}

    if steps[0].action != StepAction.PROVISION:
        problems.append(f"first step must be provision, got {steps[0].action.value}")

    previous = steps[0]
    for step in steps[1:]:
        if order[step.status] < order[previous.status]:
            problems.append(
                f"{step.action.value} ({step.status.value}) cannot follow "
                f"{previous.action.value} ({previous.status.value})"
            )
        previous = step

    actions = [step.action for step in steps]
    first_traffic = next(
        (index for index, action in enumerate(actions) if action in _TRAFFIC_ACTIONS), None
    )
    if first_traffic is not None:
        if StepAction.SMOKE_TEST not in actions[:first_traffic]:
            problems.append("smoke test must run before any traffic action")

    for index, action in enumerate(actions):
        if action == StepAction.PAUSE_WRITES and StepAction.RESUME_WRITES not in actions[index:]:
            problems.append("writes are paused but never resumed")
        if action == StepAction.MIRROR_TRAFFIC and StepAction.STOP_MIRROR not in actions[index:]:
            problems.append("traffic is mirrored but mirroring is never stopped")

    for step in steps:
        if step.action == StepAction.SHIFT_TRAFFIC:
            percent = step.params.get("percent")
            if not isinstance(percent, int) or not 0 < percent <= 100:
                problems.append(f"shift_traffic needs a percent in (0, 100], got {percent!r}")
        if step.action in (StepAction.WATCH, StepAction.MONITOR):
            seconds = step.params.get("seconds")
            if seconds is None or float(seconds) < 0:
                problems.append(f"{step.action.value} needs a non-negative 'seconds' parameter")

    if strategy is not None:
        missing = strategy.required_actions - set(actions)
        if missing:
            names = ", ".join(sorted(action.value for action in missing))
            problems.append(f"{strategy.name} plan is missing required steps: {names}")

    return problems


__all__ = [
    "MigrationStrategy",
    "BlueGreenStrategy",
    "RollingStrategy",
    "CanaryStrategy",
    "ShadowStrategy",
    "StrategyRegistry",
    "create_default_registry",
    "default_registry",
    "validate_steps",
]
