"""
Unit tests for the built-in strategies, the registry and step validation.
"""

import pytest

from migrator.config import EngineConfig
from migrator.models import MigrationStep, StepAction, Strategy
from migrator.strategies import (
    BlueGreenStrategy,
    CanaryStrategy,
    MigrationStrategy,
    RollingStrategy,
    ShadowStrategy,
    StrategyRegistry,
    create_default_registry,
    validate_steps,
)


def actions(steps):
    return [step.action for step in steps]


class TestBuiltInStrategies:
    def test_blue_green_steps(self):
        steps = BlueGreenStrategy().build_steps(EngineConfig())
        assert actions(steps) == [
            StepAction.PROVISION,
            StepAction.BULK_COPY,
            StepAction.TRANSFORM_DATA,
            StepAction.DEPLOY,
            StepAction.SMOKE_TEST,
            StepAction.PAUSE_WRITES,
            StepAction.INCREMENTAL_SYNC,
            StepAction.SWITCH_TRAFFIC,
            StepAction.RESUME_WRITES,
            StepAction.MONITOR,
            StepAction.VERIFY,
        ]

    def test_blue_green_monitor_uses_window(self):
        steps = BlueGreenStrategy().build_steps(EngineConfig(monitoring_window_seconds=42))
        monitor = next(step for step in steps if step.action == StepAction.MONITOR)
        assert monitor.params == {"seconds": 42.0}

    def test_rolling_shifts_in_increments_without_pausing_writes(self):
        steps = RollingStrategy().build_steps(EngineConfig(rolling_steps=(50, 100)))
        shifts = [s.params["percent"] for s in steps if s.action == StepAction.SHIFT_TRAFFIC]
        assert shifts == [50, 100]
        assert StepAction.PAUSE_WRITES not in actions(steps)
        assert StepAction.SWITCH_TRAFFIC not in actions(steps)
        assert actions(steps).count(StepAction.INCREMENTAL_SYNC) == 2

    def test_canary_shifts_then_promotes(self):
        steps = CanaryStrategy().build_steps(EngineConfig(canary_steps=(5, 25)))
        sequence = actions(steps)
        shifts = [s.params["percent"] for s in steps if s.action == StepAction.SHIFT_TRAFFIC]
        assert shifts == [5, 25]
        assert sequence.index(StepAction.SWITCH_TRAFFIC) > sequence.index(StepAction.SHIFT_TRAFFIC)
        assert StepAction.PAUSE_WRITES in sequence
        watches = [s for s in steps if s.action == StepAction.WATCH]
        assert len(watches) == 2

    def test_shadow_mirrors_and_never_switches(self):
        strategy = ShadowStrategy()
        steps = strategy.build_steps(EngineConfig())
        sequence = actions(steps)
        assert not strategy.cuts_over
        assert StepAction.MIRROR_TRAFFIC in sequence
        assert StepAction.STOP_MIRROR in sequence
        assert not any(action.touches_live for action in sequence)

    @pytest.mark.parametrize(
        "strategy",
        [BlueGreenStrategy(), RollingStrategy(), CanaryStrategy(), ShadowStrategy()],
        ids=lambda s: s.name,
    )
    def test_built_in_steps_are_valid(self, strategy):
        assert validate_steps(strategy.build_steps(EngineConfig()), strategy) == []

    def test_estimate_uses_step_seconds(self):
        strategy = BlueGreenStrategy()
        steps = (
            MigrationStep(StepAction.PROVISION),
            MigrationStep(StepAction.MONITOR, {"seconds": 120}),
        )
        assert strategy.estimate_seconds(steps) == 150.0


class TestRegistry:
    def test_default_registry_has_all_strategies(self):
        registry = create_default_registry()
        assert registry.names() == sorted(s.value for s in Strategy)

    def test_lookup_by_enum_or_name(self):
        registry = create_default_registry()
        assert isinstance(registry.get(Strategy.CANARY), CanaryStrategy)
        assert isinstance(registry.get("rolling"), RollingStrategy)
        assert Strategy.SHADOW in registry

    def test_unknown_strategy(self):
        with pytest.raises(KeyError, match="Unknown strategy"):
            StrategyRegistry().get(Strategy.BLUE_GREEN)

    def test_duplicate_registration_rejected(self):
        registry = create_default_registry()
        with pytest.raises(ValueError, match="already registered"):
            registry.register(BlueGreenStrategy())

    def test_replace_custom_strategy(self):
        class SlowCanary(CanaryStrategy):
            def build_steps(self, config):
                return super().build_steps(config.with_overrides(canary_steps=(1, 5, 25)))

        registry = create_default_registry()
        registry.register(SlowCanary(), replace=True)

        steps = registry.get(Strategy.CANARY).build_steps(EngineConfig())
        shifts = [s.params["percent"] for s in steps if s.action == StepAction.SHIFT_TRAFFIC]
        assert shifts == [1, 5, 25]

    def test_unnamed_strategy_rejected(self):
        class Unnamed(MigrationStrategy):
            def build_steps(self, config):
                return ()

        with pytest.raises(ValueError, match="has no name"):
            StrategyRegistry().register(Unnamed())


class TestValidateSteps:
    def test_empty_plan(self):
        assert validate_steps(()) == ["plan has no steps"]

    def test_must_start_with_provision(self):
        problems = validate_steps((MigrationStep(StepAction.BULK_COPY),))
        assert "first step must be provision, got bulk_copy" in problems

    def test_status_cannot_move_backwards(self):
        steps = (
            MigrationStep(StepAction.PROVISION),
            MigrationStep(StepAction.DEPLOY),
            MigrationStep(StepAction.BULK_COPY),
        )
        problems = validate_steps(steps)
        assert any("cannot follow" in problem for problem in problems)

    def test_traffic_requires_prior_smoke_test(self):
        steps = (
            MigrationStep(StepAction.PROVISION),
            MigrationStep(StepAction.SHIFT_TRAFFIC, {"percent": 10}),
        )
        assert "smoke test must run before any traffic action" in validate_steps(steps)

    def test_paused_writes_must_resume(self):
        steps = (
            MigrationStep(StepAction.PROVISION),
            MigrationStep(StepAction.SMOKE_TEST),
            MigrationStep(StepAction.PAUSE_WRITES),
            MigrationStep(StepAction.SWITCH_TRAFFIC),
        )
        assert "writes are paused but never resumed" in validate_steps(steps)

    def test_shift_needs_percent(self):
        steps = (
            MigrationStep(StepAction.PROVISION),
            MigrationStep(StepAction.SMOKE_TEST),
            MigrationStep(StepAction.SHIFT_TRAFFIC, {"percent": 150}),
        )
        problems = validate_steps(steps)
        assert any("needs a percent" in problem for problem in problems)

    def test_missing_required_steps_for_strategy(self):
        steps = (
            MigrationStep(StepAction.PROVISION),
            MigrationStep(StepAction.BULK_COPY),
        )
        problems = validate_steps(steps, BlueGreenStrategy())
        assert any("blue_green plan is missing required steps" in p for p in problems)
