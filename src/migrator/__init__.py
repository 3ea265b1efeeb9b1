"""
migrator - Migration orchestration engine for many independent projects.

This library provides:
- A durable per-migration state machine with SQL and in-memory stores
- Interchangeable execution strategies (blue-green, rolling, canary, shadow)
- Preflight checks and pre/post-cutover validation gates
- Guaranteed rollback once the live environment has been touched
- Bulk scheduling with a concurrency ceiling and adaptive failure containment
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("migrator-engine")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from migrator.capabilities import Capabilities, ExecutionContext
from migrator.config import EngineConfig
from migrator.engine import MigrationEngine
from migrator.exceptions import (
    BatchAborted,
    BatchNotFoundError,
    CancellationRequested,
    CollaboratorUnavailableError,
    ErrorClassification,
    ErrorHandler,
    ErrorRecoverability,
    ErrorSeverity,
    ExecutionFailure,
    InvalidStatusTransitionError,
    MigrationError,
    MigrationNotFoundError,
    PreflightFailure,
    ProjectBusyError,
    RetryConfig,
    RollbackFailure,
    ValidationFailure,
    classify_exception,
)
from migrator.executor import MigrationExecutor
from migrator.interfaces import (
    BackupStore,
    DataInspector,
    Deployer,
    HealthMonitor,
    Notifier,
    Provisioner,
    Replicator,
    SmokeTester,
    TrafficRouter,
)
from migrator.metrics import EngineMetrics, EngineMetricSnapshot
from migrator.models import (
    Backup,
    BatchRecord,
    BatchResult,
    BatchStatus,
    CheckResult,
    CleanupTicket,
    Environment,
    HealthReport,
    LogEntry,
    MigrationPlan,
    MigrationRecord,
    MigrationRequest,
    MigrationStatus,
    MigrationStatusView,
    MigrationStep,
    PreflightResult,
    RollbackPlan,
    StepAction,
    Strategy,
    ValidationResult,
)
from migrator.notifications import (
    BatchCompleted,
    BatchHalted,
    MigrationCancelled,
    MigrationCompleted,
    MigrationFailed,
    MigrationNotification,
    MigrationRolledBack,
    MigrationStarted,
    NotificationDispatcher,
    RollbackFailed,
)
from migrator.planner import MigrationPlanner
from migrator.preflight import PreflightCheck, PreflightChecker
from migrator.rollback import RollbackCoordinator
from migrator.scheduler import BulkScheduler
from migrator.stores import (
    InMemoryStateStore,
    SQLAlchemyStateStore,
    StateStore,
    create_schema,
)
from migrator.strategies import (
    BlueGreenStrategy,
    CanaryStrategy,
    MigrationStrategy,
    RollingStrategy,
    ShadowStrategy,
    StrategyRegistry,
    create_default_registry,
    default_registry,
    validate_steps,
)
from migrator.validator import Validator

__all__ = [
    "__version__",
    # Engine
    "MigrationEngine",
    "MigrationExecutor",
    "MigrationPlanner",
    "PreflightChecker",
    "PreflightCheck",
    "Validator",
    "RollbackCoordinator",
    "BulkScheduler",
    "Capabilities",
    "ExecutionContext",
    # Configuration
    "EngineConfig",
    "RetryConfig",
    # Strategies
    "MigrationStrategy",
    "BlueGreenStrategy",
    "RollingStrategy",
    "CanaryStrategy",
    "ShadowStrategy",
    "StrategyRegistry",
    "create_default_registry",
    "default_registry",
    "validate_steps",
    # Models
    "Backup",
    "BatchRecord",
    "BatchResult",
    "BatchStatus",
    "CheckResult",
    "CleanupTicket",
    "Environment",
    "HealthReport",
    "LogEntry",
    "MigrationPlan",
    "MigrationRecord",
    "MigrationRequest",
    "MigrationStatus",
    "MigrationStatusView",
    "MigrationStep",
    "PreflightResult",
    "RollbackPlan",
    "StepAction",
    "Strategy",
    "ValidationResult",
    # Collaborators
    "BackupStore",
    "DataInspector",
    "Deployer",
    "HealthMonitor",
    "Notifier",
    "Provisioner",
    "Replicator",
    "SmokeTester",
    "TrafficRouter",
    # Stores
    "StateStore",
    "InMemoryStateStore",
    "SQLAlchemyStateStore",
    "create_schema",
    # Notifications
    "MigrationNotification",
    "MigrationStarted",
    "MigrationCompleted",
    "MigrationFailed",
    "MigrationCancelled",
    "MigrationRolledBack",
    "RollbackFailed",
    "BatchCompleted",
    "BatchHalted",
    "NotificationDispatcher",
    # Metrics
    "EngineMetrics",
    "EngineMetricSnapshot",
    # Exceptions
    "MigrationError",
    "MigrationNotFoundError",
    "BatchNotFoundError",
    "ProjectBusyError",
    "InvalidStatusTransitionError",
    "PreflightFailure",
    "ExecutionFailure",
    "ValidationFailure",
    "CancellationRequested",
    "RollbackFailure",
    "BatchAborted",
    "CollaboratorUnavailableError",
    "ErrorHandler",
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "classify_exception",
]
