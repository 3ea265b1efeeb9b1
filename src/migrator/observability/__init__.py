"""
Observability utilities for migrator.

Provides the composition-based tracer used by every engine component and
the standard attribute names used for spans and metric labels.

Example:
    >>> from migrator.observability import create_tracer, ATTR_PLAN_ID
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from migrator.observability.attributes import (
    ATTR_BATCH_ID,
    ATTR_BATCH_SIZE,
    ATTR_CHECK_NAME,
    ATTR_CONCURRENCY,
    ATTR_DB_SYSTEM,
    ATTR_ENVIRONMENT_ID,
    ATTR_ERROR_TYPE,
    ATTR_FAILURE_RATE,
    ATTR_NEW_STATUS,
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    ATTR_SOURCE_VERSION,
    ATTR_STEP_ACTION,
    ATTR_STRATEGY,
    ATTR_TARGET_VERSION,
)
from migrator.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracers
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_CHECK_NAME",
    "ATTR_CONCURRENCY",
    "ATTR_DB_SYSTEM",
    "ATTR_ENVIRONMENT_ID",
    "ATTR_ERROR_TYPE",
    "ATTR_FAILURE_RATE",
    "ATTR_NEW_STATUS",
    "ATTR_PLAN_ID",
    "ATTR_PROJECT_ID",
    "ATTR_SOURCE_VERSION",
    "ATTR_STEP_ACTION",
    "ATTR_STRATEGY",
    "ATTR_TARGET_VERSION",
]
