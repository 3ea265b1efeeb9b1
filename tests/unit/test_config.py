"""
Unit tests for EngineConfig validation and override layering.
"""

from datetime import timedelta

import pytest

from migrator.config import EngineConfig
from migrator.exceptions import RetryConfig
from migrator.planner import effective_config


class TestEngineConfigDefaults:
    def test_defaults(self):
        config = EngineConfig()
        assert config.failure_threshold == 0.20
        assert config.default_concurrency == 4
        assert config.monitoring_window == timedelta(minutes=5)
        assert config.backup_max_age == timedelta(hours=24)
        assert config.cleanup_retention == timedelta(days=7)
        assert config.canary_steps == (10, 50)
        assert config.rolling_steps == (25, 50, 75, 100)

    def test_is_frozen(self):
        config = EngineConfig()
        with pytest.raises(AttributeError):
            config.failure_threshold = 0.5  # type: ignore[misc]


class TestEngineConfigValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failure_threshold": 1.5},
            {"failure_threshold": -0.1},
            {"default_concurrency": 0},
            {"monitoring_window_seconds": -1},
            {"monitoring_poll_interval_seconds": 0},
            {"backup_max_age_hours": 0},
            {"log_tail_size": 0},
            {"spot_check_sample_size": -1},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            EngineConfig(**kwargs)

    def test_rolling_steps_must_end_at_100(self):
        with pytest.raises(ValueError, match="must end at 100"):
            EngineConfig(rolling_steps=(25, 50))

    def test_canary_steps_must_stay_below_100(self):
        with pytest.raises(ValueError, match="below 100"):
            EngineConfig(canary_steps=(10, 100))

    def test_steps_must_increase(self):
        with pytest.raises(ValueError, match="strictly increasing"):
            EngineConfig(rolling_steps=(50, 25, 100))

    def test_unknown_version_override_keys_rejected(self):
        with pytest.raises(ValueError, match="Unknown override keys"):
            EngineConfig(version_overrides={"v3": {"no_such_knob": 1}})


class TestOverrides:
    def test_with_overrides_replaces_fields(self):
        config = EngineConfig().with_overrides(monitoring_window_seconds=60, canary_steps=[5])
        assert config.monitoring_window_seconds == 60.0
        assert config.canary_steps == (5,)

    def test_with_overrides_validates(self):
        with pytest.raises(ValueError):
            EngineConfig().with_overrides(failure_threshold=2.0)

    def test_with_overrides_rejects_unknown_fields(self):
        with pytest.raises(ValueError, match="Unknown config overrides"):
            EngineConfig().with_overrides(bogus=True)

    def test_empty_overrides_return_same_instance(self):
        config = EngineConfig()
        assert config.with_overrides() is config

    def test_retry_override_from_dict(self):
        config = EngineConfig().with_overrides(retry={"max_attempts": 7})
        assert config.retry.max_attempts == 7

    def test_for_version(self):
        config = EngineConfig(version_overrides={"v3": {"monitoring_window_seconds": 900}})
        assert config.for_version("v3").monitoring_window_seconds == 900.0
        assert config.for_version("v2") is config

    def test_request_overrides_apply_after_version_overrides(self):
        config = EngineConfig(
            version_overrides={"v3": {"monitoring_window_seconds": 900, "log_tail_size": 5}}
        )
        resolved = effective_config(config, "v3", {"monitoring_window_seconds": 10})
        assert resolved.monitoring_window_seconds == 10.0
        assert resolved.log_tail_size == 5


class TestSerialization:
    def test_dict_round_trip(self):
        config = EngineConfig(
            failure_threshold=0.1,
            canary_steps=(5, 20),
            retry=RetryConfig(max_attempts=5),
            version_overrides={"v3": {"health_watch_seconds": 1}},
        )
        restored = EngineConfig.from_dict(config.to_dict())
        assert restored == config

    def test_from_empty_dict_gives_defaults(self):
        assert EngineConfig.from_dict({}) == EngineConfig()
