"""
Standard span and metric attributes for migrator.

This module defines attribute constants used across all migrator components
for consistent span naming and metrics labeling. These follow OpenTelemetry
semantic conventions where applicable.

Example:
    >>> from migrator.observability.attributes import (
    ...     ATTR_PLAN_ID,
    ...     ATTR_PROJECT_ID,
    ... )
    >>>
    >>> with tracer.span(
    ...     "migrator.executor.execute",
    ...     {
    ...         ATTR_PLAN_ID: str(plan.plan_id),
    ...         ATTR_PROJECT_ID: plan.project_id,
    ...     },
    ... ):
    ...     pass
"""

# =============================================================================
# Plan Attributes
# =============================================================================

ATTR_PLAN_ID = "migrator.plan.id"
"""Unique identifier for the migration plan (UUID string)."""

ATTR_PROJECT_ID = "migrator.project.id"
"""Identifier of the project being migrated."""

ATTR_STRATEGY = "migrator.plan.strategy"
"""Execution strategy of the plan (e.g., 'blue_green', 'canary')."""

ATTR_SOURCE_VERSION = "migrator.plan.source_version"
"""Platform version the project is migrating from."""

ATTR_TARGET_VERSION = "migrator.plan.target_version"
"""Platform version the project is migrating to."""

# =============================================================================
# Record Attributes
# =============================================================================

ATTR_NEW_STATUS = "migrator.record.new_status"
"""Status being transitioned to."""

ATTR_STEP_ACTION = "migrator.step.action"
"""Action of the step being executed."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_ID = "migrator.batch.id"
"""Unique identifier of a bulk submission (UUID string)."""

ATTR_BATCH_SIZE = "migrator.batch.size"
"""Number of plans in a bulk submission or dispatch batch (integer)."""

ATTR_CONCURRENCY = "migrator.batch.concurrency"
"""Concurrency ceiling of a bulk submission (integer)."""

ATTR_FAILURE_RATE = "migrator.batch.failure_rate"
"""Observed failure rate of a dispatch batch (float 0-1)."""

# =============================================================================
# Collaborator Attributes
# =============================================================================

ATTR_ENVIRONMENT_ID = "migrator.environment.id"
"""Identifier of an environment involved in an operation."""

ATTR_CHECK_NAME = "migrator.preflight.check"
"""Name of a preflight check."""

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (OTEL semantic convention)."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name for failed operations."""


__all__ = [
    "ATTR_PLAN_ID",
    "ATTR_PROJECT_ID",
    "ATTR_STRATEGY",
    "ATTR_SOURCE_VERSION",
    "ATTR_TARGET_VERSION",
    "ATTR_NEW_STATUS",
    "ATTR_STEP_ACTION",
    "ATTR_BATCH_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_CONCURRENCY",
    "ATTR_FAILURE_RATE",
    "ATTR_ENVIRONMENT_ID",
    "ATTR_CHECK_NAME",
    "ATTR_DB_SYSTEM",
    "ATTR_ERROR_TYPE",
]
