"""
Data models for the migration orchestration engine.

This module defines the core data structures shared by every engine
component: the immutable plan that describes one project's migration, the
durable record that tracks its execution, and the small value types passed
between the engine and its collaborators.

Models in this module:

Enums:
    - MigrationStatus: Migration record states
    - Strategy: Execution strategies
    - StepAction: Actions a plan step can perform
    - BatchStatus: Bulk submission states

Plan:
    - MigrationRequest: What a caller asks for
    - MigrationStep: One action of a plan with its parameters
    - RollbackPlan: What to restore when the plan fails
    - MigrationPlan: Immutable unit of work

Record:
    - LogEntry: One line of a record's log trail
    - MigrationRecord: Durable status projection of a plan
    - MigrationStatusView: Record plus log tail returned to callers

Collaborator values:
    - Environment: Handle to a provisioned runtime + data environment
    - Backup: Handle to a snapshot
    - HealthReport: One observation of an environment's health
    - CheckResult / PreflightResult: Preflight outcomes
    - ValidationResult: Validator outcome

Scheduling:
    - BatchRecord: Durable bulk submission membership
    - BatchResult: Aggregate over a bulk submission's records
    - CleanupTicket: Deferred environment cleanup
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class MigrationStatus(Enum):
    """
    Migration record states.

    State machine transitions:
        PENDING -> PREFLIGHT_CHECKS -> BACKING_UP -> PROVISIONING
            -> MIGRATING_DATA -> TESTING -> SWITCHING_TRAFFIC
            -> MONITORING -> COMPLETED
        Any non-final status ---------> FAILED
        FAILED ------------------------> ROLLED_BACK (rollback succeeded)

    COMPLETED and ROLLED_BACK are terminal. FAILED is final for forward
    progress; the only way out of it is a successful rollback.
    """

    PENDING = "pending"
    PREFLIGHT_CHECKS = "preflight_checks"
    BACKING_UP = "backing_up"
    PROVISIONING = "provisioning"
    MIGRATING_DATA = "migrating_data"
    TESTING = "testing"
    SWITCHING_TRAFFIC = "switching_traffic"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        """Check if no transition may leave this status."""
        return self in (MigrationStatus.COMPLETED, MigrationStatus.ROLLED_BACK)

    @property
    def is_final(self) -> bool:
        """Check if the migration has stopped making forward progress."""
        return self.is_terminal or self == MigrationStatus.FAILED

    @property
    def is_active(self) -> bool:
        """Check if the migration still holds its project."""
        return not self.is_final

    @property
    def stage(self) -> str:
        """Stage marker recorded when a migration fails in this status."""
        if self == MigrationStatus.PREFLIGHT_CHECKS:
            return "preflight"
        return self.value

    @property
    def progress(self) -> int:
        """Progress percentage reached when entering this status."""
        return _STATUS_PROGRESS.get(self, 0)


_STATUS_PROGRESS: dict[MigrationStatus, int] = {
    MigrationStatus.PENDING: 0,
    MigrationStatus.PREFLIGHT_CHECKS: 5,
    MigrationStatus.BACKING_UP: 15,
    MigrationStatus.PROVISIONING: 25,
    MigrationStatus.MIGRATING_DATA: 40,
    MigrationStatus.TESTING: 60,
    MigrationStatus.SWITCHING_TRAFFIC: 75,
    MigrationStatus.MONITORING: 90,
    MigrationStatus.COMPLETED: 100,
}

# Statuses a plan passes through while its steps run, in order.
FORWARD_STATUSES: tuple[MigrationStatus, ...] = (
    MigrationStatus.PENDING,
    MigrationStatus.PREFLIGHT_CHECKS,
    MigrationStatus.BACKING_UP,
    MigrationStatus.PROVISIONING,
    MigrationStatus.MIGRATING_DATA,
    MigrationStatus.TESTING,
    MigrationStatus.SWITCHING_TRAFFIC,
    MigrationStatus.MONITORING,
    MigrationStatus.COMPLETED,
)


class Strategy(Enum):
    """
    Execution strategies.

    Attributes:
        BLUE_GREEN: Full copy, single atomic traffic switch with a write pause.
        ROLLING: Gradual traffic replacement in increments, writes never paused.
        CANARY: Small traffic share first, then promotion with a write pause.
        SHADOW: Read traffic mirrored to the copy for comparison, no switch.
    """

    BLUE_GREEN = "blue_green"
    ROLLING = "rolling"
    CANARY = "canary"
    SHADOW = "shadow"


class StepAction(Enum):
    """
    Actions a plan step can perform.

    Each action belongs to exactly one status; a plan's steps are ordered
    so that the statuses they belong to never move backwards.
    """

    PROVISION = "provision"
    BULK_COPY = "bulk_copy"
    TRANSFORM_DATA = "transform_data"
    DEPLOY = "deploy"
    SMOKE_TEST = "smoke_test"
    PAUSE_WRITES = "pause_writes"
    INCREMENTAL_SYNC = "incremental_sync"
    SHIFT_TRAFFIC = "shift_traffic"
    SWITCH_TRAFFIC = "switch_traffic"
    MIRROR_TRAFFIC = "mirror_traffic"
    WATCH = "watch"
    RESUME_WRITES = "resume_writes"
    MONITOR = "monitor"
    STOP_MIRROR = "stop_mirror"
    VERIFY = "verify"

    @property
    def status(self) -> MigrationStatus:
        """The status the record is in while this action runs."""
        return _ACTION_STATUS[self]

    @property
    def touches_live(self) -> bool:
        """Whether running this action alters the live environment."""
        return self in (
            StepAction.PAUSE_WRITES,
            StepAction.SHIFT_TRAFFIC,
            StepAction.SWITCH_TRAFFIC,
        )


_ACTION_STATUS: dict[StepAction, MigrationStatus] = {
    StepAction.PROVISION: MigrationStatus.PROVISIONING,
    StepAction.BULK_COPY: MigrationStatus.MIGRATING_DATA,
    StepAction.TRANSFORM_DATA: MigrationStatus.MIGRATING_DATA,
    StepAction.DEPLOY: MigrationStatus.TESTING,
    StepAction.SMOKE_TEST: MigrationStatus.TESTING,
    StepAction.PAUSE_WRITES: MigrationStatus.SWITCHING_TRAFFIC,
    StepAction.INCREMENTAL_SYNC: MigrationStatus.SWITCHING_TRAFFIC,
    StepAction.SHIFT_TRAFFIC: MigrationStatus.SWITCHING_TRAFFIC,
    StepAction.SWITCH_TRAFFIC: MigrationStatus.SWITCHING_TRAFFIC,
    StepAction.MIRROR_TRAFFIC: MigrationStatus.SWITCHING_TRAFFIC,
    StepAction.WATCH: MigrationStatus.SWITCHING_TRAFFIC,
    StepAction.RESUME_WRITES: MigrationStatus.SWITCHING_TRAFFIC,
    StepAction.MONITOR: MigrationStatus.MONITORING,
    StepAction.STOP_MIRROR: MigrationStatus.MONITORING,
    StepAction.VERIFY: MigrationStatus.MONITORING,
}


class BatchStatus(Enum):
    """Bulk submission states."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


# =============================================================================
# Collaborator values
# =============================================================================


@dataclass(frozen=True)
class Environment:
    """
    Handle to an isolated runtime + data environment.

    Attributes:
        env_id: Provisioner-assigned identifier.
        project_id: Project the environment belongs to.
        version: Application/platform version the environment runs.
    """

    env_id: str
    project_id: str
    version: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "env_id": self.env_id,
            "project_id": self.project_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Environment:
        """Create from dictionary."""
        return cls(
            env_id=data["env_id"],
            project_id=data["project_id"],
            version=data["version"],
        )


@dataclass(frozen=True)
class Backup:
    """
    Opaque snapshot handle created by the Backup Store.

    Attributes:
        backup_id: Store-assigned identifier.
        project_id: Project the snapshot belongs to.
        created_at: When the snapshot was taken (UTC).
    """

    backup_id: str
    project_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def age(self, now: datetime | None = None) -> timedelta:
        """Time elapsed since the snapshot was taken."""
        return (now or datetime.now(UTC)) - self.created_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "backup_id": self.backup_id,
            "project_id": self.project_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Backup:
        """Create from dictionary."""
        return cls(
            backup_id=data["backup_id"],
            project_id=data["project_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class HealthReport:
    """
    One observation of an environment's health.

    Attributes:
        healthy: False if the monitor detected a failure.
        conclusive: True if the monitor is confident enough to end the
            observation window early.
        reason: Human-readable explanation (required when unhealthy).
    """

    healthy: bool
    conclusive: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single named preflight check."""

    name: str
    passed: bool
    reason: str | None = None


@dataclass(frozen=True)
class PreflightResult:
    """
    Outcome of all preflight checks for one plan.

    Never persisted; its summary goes into the record's log trail.
    """

    checks: tuple[CheckResult, ...]

    @property
    def passed(self) -> bool:
        """True only if every check passed."""
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> list[CheckResult]:
        """Checks that did not pass."""
        return [check for check in self.checks if not check.passed]

    def summary(self) -> str:
        """One-line description of the failed checks."""
        if self.passed:
            return "all preflight checks passed"
        return "; ".join(
            f"{check.name}: {check.reason or 'failed'}" for check in self.failures
        )


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of a Validator run.

    Attributes:
        passed: Whether the environment passed every check.
        reasons: Human-readable reasons for each failure.
        phase: Which gate produced the result ("pre_cutover" or "post_cutover").
    """

    passed: bool
    reasons: tuple[str, ...] = ()
    phase: str = "pre_cutover"


# =============================================================================
# Plan
# =============================================================================


@dataclass(frozen=True)
class MigrationRequest:
    """
    A caller's request to migrate one project.

    Attributes:
        project_id: Project to migrate.
        target_version: Version to migrate to.
        strategy: Execution strategy.
        overrides: Per-request EngineConfig overrides.
    """

    project_id: str
    target_version: str
    strategy: Strategy = Strategy.BLUE_GREEN
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MigrationStep:
    """
    One action of a plan.

    Attributes:
        action: What to do.
        params: Action parameters (e.g., {"percent": 25} for SHIFT_TRAFFIC).
    """

    action: StepAction
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> MigrationStatus:
        """The status the record is in while this step runs."""
        return self.action.status

    def describe(self) -> str:
        """Human-readable description for log entries."""
        if not self.params:
            return self.action.value
        rendered = ", ".join(f"{key}={value}" for key, value in sorted(self.params.items()))
        return f"{self.action.value}({rendered})"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {"action": self.action.value, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationStep:
        """Create from dictionary."""
        return cls(action=StepAction(data["action"]), params=dict(data.get("params", {})))


@dataclass(frozen=True)
class RollbackPlan:
    """
    What to restore if the plan fails after touching the live environment.

    Attributes:
        restore_version: Version to redeploy onto the original environment.
        backup_id: Backup to restore; filled in on the record once taken.
    """

    restore_version: str
    backup_id: str | None = None


@dataclass(frozen=True)
class MigrationPlan:
    """
    Immutable description of one project's intended migration.

    A plan is created when a migration is requested, consumed exactly once
    by the executor and then discarded; only its MigrationRecord persists.

    Attributes:
        plan_id: Unique plan identifier (also the record key).
        project_id: Project to migrate.
        source_version: Version the project runs now.
        target_version: Version to migrate to.
        strategy: Execution strategy.
        steps: Ordered strategy-specific steps.
        estimated_duration_seconds: Scheduling hint, never used for correctness.
        rollback_plan: What to restore on failure.
        resource_units: Estimated capacity needed for the new environment.
        batch_id: Bulk submission the plan belongs to, if any.
        config_overrides: EngineConfig overrides applied to this plan.
        created_at: When the plan was built.
    """

    plan_id: UUID
    project_id: str
    source_version: str
    target_version: str
    strategy: Strategy
    steps: tuple[MigrationStep, ...]
    estimated_duration_seconds: float
    rollback_plan: RollbackPlan
    resource_units: int = 1
    batch_id: UUID | None = None
    config_overrides: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Record
# =============================================================================


@dataclass(frozen=True)
class LogEntry:
    """One timestamped line of a record's append-only log trail."""

    timestamp: datetime
    message: str
    level: str = "info"

    def render(self) -> str:
        """Format for display."""
        return f"{self.timestamp.isoformat()} [{self.level}] {self.message}"


@dataclass
class MigrationRecord:
    """
    Durable status projection of a plan's execution.

    This is a mutable dataclass because its status and progress change
    throughout the migration; every change goes through the State Store.

    Attributes:
        plan_id: Key, shared with the plan.
        project_id: Project being migrated.
        strategy: Execution strategy.
        source_version: Version migrated from.
        target_version: Version migrated to.
        status: Current status.
        progress: Progress percentage (0-100).
        started_at: When the migration left PENDING.
        completed_at: When the migration reached a final status.
        log: Append-only log trail (populated on read).
        backup: Backup taken before any mutation.
        rollback_available: True while the backup is held for rollback.
        rolled_back: True once a rollback restored the prior state.
        error: Terminal error text.
        failed_stage: Stage marker of the failure.
        batch_id: Bulk submission the plan belongs to.
        blue_env: The live environment before migration.
        green_env: The environment created for the target version.
        live_touched: True once writes were paused or traffic moved on blue.
        traffic_shifted: True once any traffic share moved to green.
        cancel_requested: True once a caller asked to cancel.
        created_at: When the record was created.
        updated_at: When the record last changed.
    """

    plan_id: UUID
    project_id: str
    strategy: Strategy
    source_version: str
    target_version: str
    status: MigrationStatus = MigrationStatus.PENDING
    progress: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    log: list[LogEntry] = field(default_factory=list)
    backup: Backup | None = None
    rollback_available: bool = False
    rolled_back: bool = False
    error: str | None = None
    failed_stage: str | None = None
    batch_id: UUID | None = None
    blue_env: Environment | None = None
    green_env: Environment | None = None
    live_touched: bool = False
    traffic_shifted: bool = False
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_plan(cls, plan: MigrationPlan) -> MigrationRecord:
        """Create the PENDING record for a freshly built plan."""
        return cls(
            plan_id=plan.plan_id,
            project_id=plan.project_id,
            strategy=plan.strategy,
            source_version=plan.source_version,
            target_version=plan.target_version,
            batch_id=plan.batch_id,
        )

    @property
    def duration(self) -> timedelta | None:
        """Elapsed time from start to completion (or now, while running)."""
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now(UTC)
        return end - self.started_at

    @property
    def is_active(self) -> bool:
        """Check if the migration still holds its project."""
        return self.status.is_active

    @property
    def succeeded(self) -> bool:
        """Check if the migration completed."""
        return self.status == MigrationStatus.COMPLETED


@dataclass(frozen=True)
class MigrationStatusView:
    """
    Current record plus its log tail, as returned to callers.

    Attributes:
        record: The migration record.
        log_tail: Most recent log entries, oldest first.
    """

    record: MigrationRecord
    log_tail: tuple[LogEntry, ...]

    @property
    def status(self) -> MigrationStatus:
        return self.record.status

    @property
    def progress(self) -> int:
        return self.record.progress


# =============================================================================
# Scheduling
# =============================================================================


@dataclass
class BatchRecord:
    """
    Durable membership of a bulk submission.

    Attributes:
        batch_id: Unique identifier returned to the caller.
        plan_ids: Plan ids in dispatch order (cheapest first).
        target_version: Version every project migrates to.
        strategy: Strategy every plan uses.
        concurrency: Dispatch batch size.
        status: Running, completed or aborted.
        not_started: Plans never dispatched because the batch was aborted.
        abort_reason: Why dispatch halted.
        created_at: When the submission was accepted.
        completed_at: When dispatch finished or halted.
    """

    batch_id: UUID
    plan_ids: list[UUID]
    target_version: str
    strategy: Strategy
    concurrency: int
    status: BatchStatus = BatchStatus.RUNNING
    not_started: list[UUID] = field(default_factory=list)
    abort_reason: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None


@dataclass(frozen=True)
class BatchResult:
    """
    Aggregate over the records of a bulk submission.

    Attributes:
        batch_id: The bulk submission.
        total: Number of plans in the submission.
        successful: Plans that completed.
        failed: Dispatched plans that ended failed or rolled back.
        in_progress: Dispatched plans still running.
        not_started: Plans never dispatched.
        aborted: Whether the scheduler halted dispatch.
        abort_reason: Why dispatch halted.
        records: Records of dispatched plans.
    """

    batch_id: UUID
    total: int
    successful: int
    failed: int
    in_progress: int = 0
    not_started: tuple[UUID, ...] = ()
    aborted: bool = False
    abort_reason: str | None = None
    records: tuple[MigrationRecord, ...] = ()

    @property
    def attempted(self) -> int:
        """Plans that were dispatched."""
        return self.successful + self.failed + self.in_progress

    @property
    def failure_rate(self) -> float:
        """Failed share of finished, dispatched plans."""
        finished = self.successful + self.failed
        if finished == 0:
            return 0.0
        return self.failed / finished

    @property
    def is_done(self) -> bool:
        """Whether every dispatched plan has finished and dispatch stopped."""
        return self.in_progress == 0 and (
            self.aborted or self.successful + self.failed + len(self.not_started) == self.total
        )

    def raise_for_abort(self) -> None:
        """
        Raise BatchAborted if the scheduler halted dispatch.

        Raises:
            BatchAborted: If this result is aborted.
        """
        if self.aborted:
            from migrator.exceptions import BatchAborted

            raise BatchAborted(self)


@dataclass(frozen=True)
class CleanupTicket:
    """
    Deferred cleanup of an environment kept for emergency manual rollback.

    Attributes:
        ticket_id: Unique identifier.
        plan_id: Plan that produced the ticket.
        project_id: Project the resources belong to.
        environment: Environment to destroy when due.
        backup: Backup to release when due.
        due_at: Earliest time the cleanup may run.
        completed_at: When the cleanup ran.
    """

    plan_id: UUID
    project_id: str
    due_at: datetime
    environment: Environment | None = None
    backup: Backup | None = None
    ticket_id: UUID = field(default_factory=uuid4)
    completed_at: datetime | None = None

    def is_due(self, now: datetime | None = None) -> bool:
        """Check whether the retention window has elapsed."""
        return self.completed_at is None and (now or datetime.now(UTC)) >= self.due_at
