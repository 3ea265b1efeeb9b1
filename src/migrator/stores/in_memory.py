"""
In-memory StateStore implementation.

Keeps all engine state in process memory behind a single asyncio.Lock.
All data is lost when the process terminates; use it for tests and local
development, and SQLAlchemyStateStore in production.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from migrator.exceptions import MigrationNotFoundError, ProjectBusyError
from migrator.models import (
    BatchRecord,
    CleanupTicket,
    LogEntry,
    MigrationRecord,
    MigrationStatus,
)
from migrator.observability import (
    ATTR_BATCH_ID,
    ATTR_NEW_STATUS,
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    Tracer,
    create_tracer,
)
from migrator.stores.interface import MUTABLE_RECORD_FIELDS, apply_status


class InMemoryStateStore:
    """
    In-memory implementation of StateStore for testing.

    Example:
        >>> store = InMemoryStateStore()
        >>> await store.create_record(MigrationRecord.for_plan(plan))
        >>> await store.update_status(plan.plan_id, MigrationStatus.PREFLIGHT_CHECKS)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize an empty in-memory store.

        Args:
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._records: dict[UUID, MigrationRecord] = {}
        self._logs: dict[UUID, list[LogEntry]] = {}
        self._batches: dict[UUID, BatchRecord] = {}
        self._cleanups: dict[UUID, CleanupTicket] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    def _snapshot(self, record: MigrationRecord, *, with_log: bool = True) -> MigrationRecord:
        log = list(self._logs.get(record.plan_id, [])) if with_log else []
        return replace(record, log=log)

    def _require(self, plan_id: UUID) -> MigrationRecord:
        record = self._records.get(plan_id)
        if record is None:
            raise MigrationNotFoundError(plan_id)
        return record

    async def create_record(self, record: MigrationRecord) -> UUID:
        with self._tracer.span(
            "migrator.state_store.create_record",
            {
                ATTR_PLAN_ID: str(record.plan_id),
                ATTR_PROJECT_ID: record.project_id,
            },
        ):
            async with self._lock:
                for existing in self._records.values():
                    if existing.project_id == record.project_id and existing.is_active:
                        raise ProjectBusyError(record.project_id, existing.plan_id)
                self._records[record.plan_id] = replace(record, log=[])
                self._logs[record.plan_id] = list(record.log)
                return record.plan_id

    async def get_record(self, plan_id: UUID) -> MigrationRecord | None:
        with self._tracer.span(
            "migrator.state_store.get_record",
            {ATTR_PLAN_ID: str(plan_id)},
        ):
            async with self._lock:
                record = self._records.get(plan_id)
                return self._snapshot(record) if record else None

    async def get_active_for_project(self, project_id: str) -> MigrationRecord | None:
        async with self._lock:
            for record in self._records.values():
                if record.project_id == project_id and record.is_active:
                    return self._snapshot(record)
            return None

    async def update_status(
        self,
        plan_id: UUID,
        new_status: MigrationStatus,
        *,
        error: str | None = None,
        failed_stage: str | None = None,
    ) -> MigrationRecord:
        with self._tracer.span(
            "migrator.state_store.update_status",
            {
                ATTR_PLAN_ID: str(plan_id),
                ATTR_NEW_STATUS: new_status.value,
            },
        ):
            async with self._lock:
                record = self._require(plan_id)
                updated = apply_status(
                    record,
                    new_status,
                    datetime.now(UTC),
                    error=error,
                    failed_stage=failed_stage,
                )
                self._records[plan_id] = updated
                return self._snapshot(updated)

    async def update_record(self, plan_id: UUID, **changes: Any) -> MigrationRecord:
        unknown = set(changes) - MUTABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")
        async with self._lock:
            record = self._require(plan_id)
            updated = replace(record, updated_at=datetime.now(UTC), **changes)
            self._records[plan_id] = updated
            return self._snapshot(updated)

    async def append_log(self, plan_id: UUID, message: str, level: str = "info") -> LogEntry:
        async with self._lock:
            self._require(plan_id)
            entry = LogEntry(timestamp=datetime.now(UTC), message=message, level=level)
            self._logs.setdefault(plan_id, []).append(entry)
            return entry

    async def get_log(self, plan_id: UUID, limit: int | None = None) -> list[LogEntry]:
        async with self._lock:
            entries = list(self._logs.get(plan_id, []))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    async def list_records(
        self,
        *,
        status: MigrationStatus | None = None,
        project_id: str | None = None,
        batch_id: UUID | None = None,
    ) -> list[MigrationRecord]:
        async with self._lock:
            records = [
                self._snapshot(record, with_log=False)
                for record in self._records.values()
                if (status is None or record.status == status)
                and (project_id is None or record.project_id == project_id)
                and (batch_id is None or record.batch_id == batch_id)
            ]
        return sorted(records, key=lambda r: r.created_at)

    async def list_unfinished(self) -> list[MigrationRecord]:
        async with self._lock:
            records = [
                self._snapshot(record, with_log=False)
                for record in self._records.values()
                if not record.status.is_final
            ]
        return sorted(records, key=lambda r: r.created_at)

    async def save_batch(self, batch: BatchRecord) -> None:
        with self._tracer.span(
            "migrator.state_store.save_batch",
            {ATTR_BATCH_ID: str(batch.batch_id)},
        ):
            async with self._lock:
                self._batches[batch.batch_id] = replace(batch, plan_ids=list(batch.plan_ids))

    async def get_batch(self, batch_id: UUID) -> BatchRecord | None:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return None
            return replace(
                batch,
                plan_ids=list(batch.plan_ids),
                not_started=list(batch.not_started),
            )

    async def finish_batch(self, batch: BatchRecord) -> None:
        async with self._lock:
            existing = self._batches.get(batch.batch_id)
            if existing is None:
                raise ValueError(f"Unknown batch: {batch.batch_id}")
            self._batches[batch.batch_id] = replace(
                existing,
                status=batch.status,
                not_started=list(batch.not_started),
                abort_reason=batch.abort_reason,
                completed_at=batch.completed_at,
            )

    async def schedule_cleanup(self, ticket: CleanupTicket) -> None:
        async with self._lock:
            self._cleanups[ticket.ticket_id] = ticket

    async def due_cleanups(self, now: datetime) -> list[CleanupTicket]:
        async with self._lock:
            due = [ticket for ticket in self._cleanups.values() if ticket.is_due(now)]
        return sorted(due, key=lambda t: t.due_at)

    async def complete_cleanup(self, ticket_id: UUID, completed_at: datetime) -> None:
        async with self._lock:
            ticket = self._cleanups.get(ticket_id)
            if ticket is not None:
                self._cleanups[ticket_id] = replace(ticket, completed_at=completed_at)

    async def list_cleanups(self, plan_id: UUID | None = None) -> list[CleanupTicket]:
        async with self._lock:
            tickets = [
                ticket
                for ticket in self._cleanups.values()
                if plan_id is None or ticket.plan_id == plan_id
            ]
        return sorted(tickets, key=lambda t: t.due_at)


__all__ = ["InMemoryStateStore"]
