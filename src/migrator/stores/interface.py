"""
StateStore protocol and the migration state machine.

The State Store durably persists migration records, their append-only log
trails, bulk submissions and deferred cleanup tickets. Every status change
is validated against VALID_TRANSITIONS before it is applied, so a record
can only ever move along the state graph.

Responsibilities:
    - Create records, rejecting a second active migration per project
    - Validate and apply status transitions with their timestamps
    - Append and read log trails
    - Persist bulk submission membership and outcome
    - Persist and hand out deferred cleanups
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from migrator.exceptions import InvalidStatusTransitionError
from migrator.models import (
    FORWARD_STATUSES,
    BatchRecord,
    CleanupTicket,
    LogEntry,
    MigrationRecord,
    MigrationStatus,
)


# Valid status transitions for the migration state machine
VALID_TRANSITIONS: dict[MigrationStatus, set[MigrationStatus]] = {
    MigrationStatus.PENDING: {
        MigrationStatus.PREFLIGHT_CHECKS,
        MigrationStatus.FAILED,
    },
    MigrationStatus.PREFLIGHT_CHECKS: {
        MigrationStatus.BACKING_UP,
        MigrationStatus.FAILED,
    },
    MigrationStatus.BACKING_UP: {
        MigrationStatus.PROVISIONING,
        MigrationStatus.FAILED,
    },
    MigrationStatus.PROVISIONING: {
        MigrationStatus.MIGRATING_DATA,
        MigrationStatus.FAILED,
    },
    MigrationStatus.MIGRATING_DATA: {
        MigrationStatus.TESTING,
        MigrationStatus.FAILED,
    },
    MigrationStatus.TESTING: {
        MigrationStatus.SWITCHING_TRAFFIC,
        MigrationStatus.FAILED,
    },
    MigrationStatus.SWITCHING_TRAFFIC: {
        MigrationStatus.MONITORING,
        MigrationStatus.FAILED,
    },
    MigrationStatus.MONITORING: {
        MigrationStatus.COMPLETED,
        MigrationStatus.FAILED,
    },
    MigrationStatus.FAILED: {MigrationStatus.ROLLED_BACK},
    MigrationStatus.COMPLETED: set(),  # Terminal
    MigrationStatus.ROLLED_BACK: set(),  # Terminal
}


def is_valid_transition(current: MigrationStatus, target: MigrationStatus) -> bool:
    """Check whether the state graph has an edge from current to target."""
    return target in VALID_TRANSITIONS.get(current, set())


def apply_status(
    record: MigrationRecord,
    new_status: MigrationStatus,
    now: datetime,
    *,
    error: str | None = None,
    failed_stage: str | None = None,
) -> MigrationRecord:
    """
    Return a copy of the record moved to new_status.

    Validates the edge and fills in the status-dependent fields: progress
    for forward statuses, started_at when leaving PENDING, completed_at on
    final statuses, the rollback flags on ROLLED_BACK.

    Raises:
        InvalidStatusTransitionError: If the transition is not allowed.
    """
    if not is_valid_transition(record.status, new_status):
        raise InvalidStatusTransitionError(record.plan_id, record.status, new_status)

    updated = replace(record, status=new_status, updated_at=now, log=list(record.log))
    if new_status in FORWARD_STATUSES:
        updated.progress = new_status.progress
    if record.status == MigrationStatus.PENDING and new_status != MigrationStatus.FAILED:
        updated.started_at = now
    if new_status.is_final:
        updated.completed_at = now
    if new_status == MigrationStatus.FAILED:
        updated.failed_stage = failed_stage or record.status.stage
        if error is not None:
            updated.error = error
    elif error is not None:
        updated.error = error
    if new_status == MigrationStatus.ROLLED_BACK:
        updated.rolled_back = True
        updated.rollback_available = False
    return updated


# Record fields that may be changed outside a status transition
MUTABLE_RECORD_FIELDS: frozenset[str] = frozenset(
    {
        "progress",
        "backup",
        "rollback_available",
        "rolled_back",
        "error",
        "failed_stage",
        "blue_env",
        "green_env",
        "live_touched",
        "traffic_shifted",
        "cancel_requested",
    }
)


@runtime_checkable
class StateStore(Protocol):
    """
    Protocol for durable engine state.

    Implementations must serialize writes to the same record and validate
    status transitions according to VALID_TRANSITIONS.
    """

    async def create_record(self, record: MigrationRecord) -> UUID:
        """
        Persist a new PENDING record.

        Raises:
            ProjectBusyError: If the project already has an active record.
        """
        ...

    async def get_record(self, plan_id: UUID) -> MigrationRecord | None:
        """Get a record (log trail included) or None if not found."""
        ...

    async def get_active_for_project(self, project_id: str) -> MigrationRecord | None:
        """Get the project's active (non-final) record, if any."""
        ...

    async def update_status(
        self,
        plan_id: UUID,
        new_status: MigrationStatus,
        *,
        error: str | None = None,
        failed_stage: str | None = None,
    ) -> MigrationRecord:
        """
        Apply a status transition.

        Sets progress for forward statuses, started_at when leaving PENDING
        and completed_at on reaching a final status.

        Raises:
            MigrationNotFoundError: If the record does not exist.
            InvalidStatusTransitionError: If the transition is not allowed.
        """
        ...

    async def update_record(self, plan_id: UUID, **changes: Any) -> MigrationRecord:
        """
        Change non-status fields (see MUTABLE_RECORD_FIELDS).

        Raises:
            MigrationNotFoundError: If the record does not exist.
            ValueError: If a field may not be changed this way.
        """
        ...

    async def append_log(self, plan_id: UUID, message: str, level: str = "info") -> LogEntry:
        """Append an entry to the record's log trail."""
        ...

    async def get_log(self, plan_id: UUID, limit: int | None = None) -> list[LogEntry]:
        """Return the log trail oldest first; with limit, only the most recent entries."""
        ...

    async def list_records(
        self,
        *,
        status: MigrationStatus | None = None,
        project_id: str | None = None,
        batch_id: UUID | None = None,
    ) -> list[MigrationRecord]:
        """List records (without log trails) ordered by creation time."""
        ...

    async def list_unfinished(self) -> list[MigrationRecord]:
        """List records that have not reached a final status."""
        ...

    async def save_batch(self, batch: BatchRecord) -> None:
        """Persist a new bulk submission."""
        ...

    async def get_batch(self, batch_id: UUID) -> BatchRecord | None:
        ...

    async def finish_batch(self, batch: BatchRecord) -> None:
        """Persist a bulk submission's final status, abort reason and never-started plans."""
        ...

    async def schedule_cleanup(self, ticket: CleanupTicket) -> None:
        ...

    async def due_cleanups(self, now: datetime) -> list[CleanupTicket]:
        """Return unfinished cleanup tickets whose due time has passed."""
        ...

    async def complete_cleanup(self, ticket_id: UUID, completed_at: datetime) -> None:
        ...

    async def list_cleanups(self, plan_id: UUID | None = None) -> list[CleanupTicket]:
        """List cleanup tickets, optionally for one plan."""
        ...
