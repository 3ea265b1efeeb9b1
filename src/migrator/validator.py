"""
Validator: smoke checks and data integrity comparison between environments.

Two gates use it:

    pre_cutover   Before any traffic moves. Strict: every source collection
                  has the same record count on the target and spot-checked
                  records hash identically.
    post_cutover  After the monitoring window. Smoke checks plus "no data
                  loss": target counts are at least the source counts and
                  every spot-checked source record is present on the target.

Spot checks sample up to ``spot_check_sample_size`` records per collection
from the source, fetch the same keys from the target and compare SHA-256
hashes of their canonical JSON form.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Literal

from migrator.exceptions import ValidationFailure
from migrator.interfaces import DataInspector, SmokeTester
from migrator.models import Environment, MigrationRecord, ValidationResult
from migrator.observability import (
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

ValidationPhase = Literal["pre_cutover", "post_cutover"]


def record_hash(record: dict[str, Any]) -> str:
    """SHA-256 hex digest of a record's canonical JSON form."""
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Validator:
    """
    Runs smoke checks and integrity comparisons.

    Example:
        >>> validator = Validator(smoke_tester, inspector)
        >>> result = await validator.validate("p1", record, blue, green, phase="pre_cutover")
        >>> result.passed
        True
    """

    def __init__(
        self,
        smoke_tester: SmokeTester,
        inspector: DataInspector,
        sample_size: int = 25,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the validator.

        Args:
            smoke_tester: Runs functional smoke checks against an environment.
            inspector: Reads record counts and samples.
            sample_size: Default records spot-checked per collection.
            tracer: Optional tracer for tracing.
            enable_tracing: Whether to enable OpenTelemetry tracing (default True).
        """
        self._smoke_tester = smoke_tester
        self._inspector = inspector
        self._sample_size = sample_size
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def validate(
        self,
        project_id: str,
        record: MigrationRecord | None,
        source: Environment,
        target: Environment,
        *,
        phase: ValidationPhase = "pre_cutover",
        sample_size: int | None = None,
    ) -> ValidationResult:
        """
        Validate the target environment against the source.

        Args:
            project_id: Project being migrated.
            record: The migration record (for tracing and log context).
            source: The original (blue) environment.
            target: The new (green) environment.
            phase: Which gate is running.
            sample_size: Records spot-checked per collection (defaults to
                the validator's sample size).

        Returns:
            ValidationResult with a reason for every failed check.
        """
        attributes: dict[str, Any] = {
            ATTR_PROJECT_ID: project_id,
            "migrator.validation.phase": phase,
        }
        if record is not None:
            attributes[ATTR_PLAN_ID] = str(record.plan_id)

        with self._tracer.span("migrator.validator.validate", attributes):
            limit = self._sample_size if sample_size is None else sample_size
            reasons: list[str] = []

            smoke_failures = await self._smoke_tester.run(target)
            reasons.extend(f"smoke: {failure}" for failure in smoke_failures)

            strict = phase == "pre_cutover"
            source_counts = await self._inspector.record_counts(source)
            target_counts = await self._inspector.record_counts(target)

            for collection, expected in sorted(source_counts.items()):
                actual = target_counts.get(collection)
                if actual is None:
                    reasons.append(f"integrity: collection {collection} missing on target")
                    continue
                if strict and actual != expected:
                    reasons.append(
                        f"integrity: {collection} count mismatch "
                        f"(source={expected}, target={actual})"
                    )
                elif not strict and actual < expected:
                    reasons.append(
                        f"integrity: {collection} lost records "
                        f"(source={expected}, target={actual})"
                    )

                if limit > 0 and expected > 0:
                    reasons.extend(
                        await self._spot_check(source, target, collection, limit, strict=strict)
                    )

            result = ValidationResult(passed=not reasons, reasons=tuple(reasons), phase=phase)
            if result.passed:
                logger.debug("Validation %s passed for project %s", phase, project_id)
            else:
                logger.warning(
                    "Validation %s failed for project %s: %s",
                    phase,
                    project_id,
                    "; ".join(reasons),
                )
            return result

    async def require(
        self,
        project_id: str,
        record: MigrationRecord | None,
        source: Environment,
        target: Environment,
        *,
        phase: ValidationPhase = "pre_cutover",
        sample_size: int | None = None,
        stage: str | None = None,
    ) -> ValidationResult:
        """
        Validate and raise on failure.

        Raises:
            ValidationFailure: If any check failed.
        """
        result = await self.validate(
            project_id,
            record,
            source,
            target,
            phase=phase,
            sample_size=sample_size,
        )
        if not result.passed:
            raise ValidationFailure(
                result.reasons,
                stage=stage,
                plan_id=record.plan_id if record is not None else None,
                project_id=project_id,
            )
        return result

    async def _spot_check(
        self,
        source: Environment,
        target: Environment,
        collection: str,
        limit: int,
        *,
        strict: bool,
    ) -> list[str]:
        source_records = await self._inspector.sample_records(source, collection, limit=limit)
        if not source_records:
            return []
        keys = sorted(source_records)
        target_records = await self._inspector.sample_records(target, collection, keys=keys)

        reasons: list[str] = []
        missing = [key for key in keys if key not in target_records]
        if missing:
            reasons.append(
                f"integrity: {collection} missing {len(missing)} sampled record(s) on target"
            )
        if strict:
            mismatched = [
                key
                for key in keys
                if key in target_records
                and record_hash(source_records[key]) != record_hash(target_records[key])
            ]
            if mismatched:
                reasons.append(
                    f"integrity: {collection} hash mismatch for {len(mismatched)} "
                    "sampled record(s)"
                )
        return reasons


__all__ = ["Validator", "ValidationPhase", "record_hash"]
