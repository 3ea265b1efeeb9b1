"""
Engine configuration.

EngineConfig holds every tunable knob of the engine: the bulk scheduler's
failure ceiling, monitoring and health-watch windows, backup freshness,
cleanup retention, spot-check sample size, strategy traffic steps and the
retry policy for transient collaborator errors.

Knobs resolve in three layers:
    1. EngineConfig defaults (or whatever the engine was built with)
    2. ``version_overrides[target_version]`` via ``for_version()``
    3. per-request overrides via ``with_overrides()``

Example:
    >>> config = EngineConfig(
    ...     failure_threshold=0.1,
    ...     version_overrides={"v3": {"monitoring_window_seconds": 900}},
    ... )
    >>> config.for_version("v3").monitoring_window_seconds
    900.0
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from typing import Any

from migrator.exceptions import RetryConfig


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration for the migration engine.

    This class is immutable (frozen) so a plan's effective configuration
    cannot change while it executes.

    Attributes:
        failure_threshold: Batch failure rate above which dispatch halts (default 0.20).
        default_concurrency: Plans in flight per batch when not given (default 4).
        monitoring_window_seconds: Post-cutover observation window (default 300).
        monitoring_poll_interval_seconds: Health poll interval inside windows (default 10).
        health_watch_seconds: Watch between canary/rolling traffic shifts (default 30).
        backup_max_age_hours: Maximum age of the latest backup for preflight (default 24).
        cleanup_retention_days: How long the old environment is kept (default 7).
        spot_check_sample_size: Records hashed per collection by the validator (default 25).
        canary_steps: Canary traffic percentages before promotion (default (10, 50)).
        rolling_steps: Rolling traffic increments (default (25, 50, 75, 100)).
        copy_rate_records_per_second: Replication throughput assumed when estimating
            plan durations (default 1000).
        environment_resource_units: Capacity one new environment needs (default 1).
        log_tail_size: Log entries returned by status queries (default 20).
        retry: Retry policy for transient collaborator errors.
        version_overrides: Per-target-version overrides of any other field.
    """

    failure_threshold: float = 0.20
    default_concurrency: int = 4
    monitoring_window_seconds: float = 300.0
    monitoring_poll_interval_seconds: float = 10.0
    health_watch_seconds: float = 30.0
    backup_max_age_hours: float = 24.0
    cleanup_retention_days: float = 7.0
    spot_check_sample_size: int = 25
    canary_steps: tuple[int, ...] = (10, 50)
    rolling_steps: tuple[int, ...] = (25, 50, 75, 100)
    copy_rate_records_per_second: float = 1000.0
    environment_resource_units: int = 1
    log_tail_size: int = 20
    retry: RetryConfig = field(default_factory=RetryConfig)
    version_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 0.0 <= self.failure_threshold <= 1.0:
            raise ValueError(
                f"failure_threshold must be between 0.0 and 1.0, got {self.failure_threshold}"
            )

        if self.default_concurrency < 1:
            raise ValueError(f"default_concurrency must be >= 1, got {self.default_concurrency}")

        if self.monitoring_window_seconds < 0:
            raise ValueError(
                f"monitoring_window_seconds must be >= 0, got {self.monitoring_window_seconds}"
            )

        if self.monitoring_poll_interval_seconds <= 0:
            raise ValueError(
                "monitoring_poll_interval_seconds must be > 0, "
                f"got {self.monitoring_poll_interval_seconds}"
            )

        if self.health_watch_seconds < 0:
            raise ValueError(f"health_watch_seconds must be >= 0, got {self.health_watch_seconds}")

        if self.backup_max_age_hours <= 0:
            raise ValueError(f"backup_max_age_hours must be > 0, got {self.backup_max_age_hours}")

        if self.cleanup_retention_days < 0:
            raise ValueError(
                f"cleanup_retention_days must be >= 0, got {self.cleanup_retention_days}"
            )

        if self.spot_check_sample_size < 0:
            raise ValueError(
                f"spot_check_sample_size must be >= 0, got {self.spot_check_sample_size}"
            )

        if self.copy_rate_records_per_second <= 0:
            raise ValueError(
                "copy_rate_records_per_second must be > 0, "
                f"got {self.copy_rate_records_per_second}"
            )

        if self.environment_resource_units < 0:
            raise ValueError(
                f"environment_resource_units must be >= 0, got {self.environment_resource_units}"
            )

        if self.log_tail_size < 1:
            raise ValueError(f"log_tail_size must be >= 1, got {self.log_tail_size}")

        _validate_percentages("canary_steps", self.canary_steps, final_full=False)
        _validate_percentages("rolling_steps", self.rolling_steps, final_full=True)

        known = _override_fields()
        for version, overrides in self.version_overrides.items():
            unknown = set(overrides) - known
            if unknown:
                raise ValueError(
                    f"Unknown override keys for version {version}: {sorted(unknown)}"
                )

    @property
    def monitoring_window(self) -> timedelta:
        return timedelta(seconds=self.monitoring_window_seconds)

    @property
    def backup_max_age(self) -> timedelta:
        return timedelta(hours=self.backup_max_age_hours)

    @property
    def cleanup_retention(self) -> timedelta:
        return timedelta(days=self.cleanup_retention_days)

    def with_overrides(self, **overrides: Any) -> EngineConfig:
        """
        Return a copy with the given fields replaced.

        Args:
            **overrides: Field values to replace.

        Returns:
            New EngineConfig (validated).

        Raises:
            ValueError: If an override key is unknown or a value is invalid.
        """
        if not overrides:
            return self
        unknown = set(overrides) - _override_fields()
        if unknown:
            raise ValueError(f"Unknown config overrides: {sorted(unknown)}")
        return replace(self, **_coerce(overrides))

    def for_version(self, version: str) -> EngineConfig:
        """
        Resolve the configuration that applies to a target version.

        Args:
            version: Target version of the migration.

        Returns:
            EngineConfig with that version's overrides applied.
        """
        overrides = self.version_overrides.get(version)
        if not overrides:
            return self
        return self.with_overrides(**overrides)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "failure_threshold": self.failure_threshold,
            "default_concurrency": self.default_concurrency,
            "monitoring_window_seconds": self.monitoring_window_seconds,
            "monitoring_poll_interval_seconds": self.monitoring_poll_interval_seconds,
            "health_watch_seconds": self.health_watch_seconds,
            "backup_max_age_hours": self.backup_max_age_hours,
            "cleanup_retention_days": self.cleanup_retention_days,
            "spot_check_sample_size": self.spot_check_sample_size,
            "canary_steps": list(self.canary_steps),
            "rolling_steps": list(self.rolling_steps),
            "copy_rate_records_per_second": self.copy_rate_records_per_second,
            "environment_resource_units": self.environment_resource_units,
            "log_tail_size": self.log_tail_size,
            "retry": self.retry.to_dict(),
            "version_overrides": {
                version: dict(overrides) for version, overrides in self.version_overrides.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """
        Create from dictionary.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            EngineConfig instance.
        """
        defaults = cls()
        return cls(
            failure_threshold=data.get("failure_threshold", defaults.failure_threshold),
            default_concurrency=data.get("default_concurrency", defaults.default_concurrency),
            monitoring_window_seconds=data.get(
                "monitoring_window_seconds", defaults.monitoring_window_seconds
            ),
            monitoring_poll_interval_seconds=data.get(
                "monitoring_poll_interval_seconds", defaults.monitoring_poll_interval_seconds
            ),
            health_watch_seconds=data.get("health_watch_seconds", defaults.health_watch_seconds),
            backup_max_age_hours=data.get("backup_max_age_hours", defaults.backup_max_age_hours),
            cleanup_retention_days=data.get(
                "cleanup_retention_days", defaults.cleanup_retention_days
            ),
            spot_check_sample_size=data.get(
                "spot_check_sample_size", defaults.spot_check_sample_size
            ),
            canary_steps=tuple(data.get("canary_steps", defaults.canary_steps)),
            rolling_steps=tuple(data.get("rolling_steps", defaults.rolling_steps)),
            copy_rate_records_per_second=data.get(
                "copy_rate_records_per_second", defaults.copy_rate_records_per_second
            ),
            environment_resource_units=data.get(
                "environment_resource_units", defaults.environment_resource_units
            ),
            log_tail_size=data.get("log_tail_size", defaults.log_tail_size),
            retry=RetryConfig.from_dict(data["retry"]) if "retry" in data else RetryConfig(),
            version_overrides=dict(data.get("version_overrides", {})),
        )


def _override_fields() -> set[str]:
    return {f.name for f in fields(EngineConfig)} - {"version_overrides"}


def _coerce(overrides: dict[str, Any]) -> dict[str, Any]:
    """Normalize JSON-shaped override values to field types."""
    result = dict(overrides)
    for key in ("canary_steps", "rolling_steps"):
        if key in result:
            result[key] = tuple(result[key])
    if isinstance(result.get("retry"), dict):
        result["retry"] = RetryConfig.from_dict(result["retry"])
    for key in (
        "monitoring_window_seconds",
        "monitoring_poll_interval_seconds",
        "health_watch_seconds",
        "backup_max_age_hours",
        "cleanup_retention_days",
        "failure_threshold",
        "copy_rate_records_per_second",
    ):
        if key in result:
            result[key] = float(result[key])
    return result


def _validate_percentages(name: str, steps: tuple[int, ...], *, final_full: bool) -> None:
    if not steps:
        raise ValueError(f"{name} must not be empty")
    previous = 0
    for percent in steps:
        if not 0 < percent <= 100:
            raise ValueError(f"{name} values must be in (0, 100], got {percent}")
        if percent <= previous:
            raise ValueError(f"{name} must be strictly increasing, got {list(steps)}")
        previous = percent
    if final_full and steps[-1] != 100:
        raise ValueError(f"{name} must end at 100, got {list(steps)}")
    if not final_full and steps[-1] >= 100:
        raise ValueError(f"{name} must stay below 100 before promotion, got {list(steps)}")


__all__ = ["EngineConfig"]
