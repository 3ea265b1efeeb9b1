"""
SQLAlchemy StateStore implementation.

Persists engine state with SQLAlchemy async Core and plain text() queries.
Works with PostgreSQL (asyncpg) and SQLite (aiosqlite); create the tables
with migrator.stores.schema.create_schema().

Concurrency:
    - Writes to one record are serialized in-process with a per-plan
      asyncio.Lock; on PostgreSQL the row is also locked with
      SELECT ... FOR UPDATE inside the transaction.
    - A partial unique index guarantees one active record per project
      even across processes.

Usage:
    >>> engine = create_async_engine("postgresql+asyncpg://...")
    >>> async with engine.begin() as conn:
    ...     await create_schema(conn)
    >>> store = SQLAlchemyStateStore(engine)
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from migrator.exceptions import MigrationNotFoundError, ProjectBusyError
from migrator.models import (
    Backup,
    BatchRecord,
    BatchStatus,
    CleanupTicket,
    Environment,
    LogEntry,
    MigrationRecord,
    MigrationStatus,
    Strategy,
)
from migrator.observability import (
    ATTR_BATCH_ID,
    ATTR_DB_SYSTEM,
    ATTR_NEW_STATUS,
    ATTR_PLAN_ID,
    ATTR_PROJECT_ID,
    Tracer,
    create_tracer,
)
from migrator.stores._connection import dialect_name, execute_with_connection
from migrator.stores.interface import MUTABLE_RECORD_FIELDS, apply_status

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = """
    plan_id, project_id, strategy, source_version, target_version,
    status, progress, started_at, completed_at, backup,
    rollback_available, rolled_back, error, failed_stage, batch_id,
    blue_env, green_env, live_touched, traffic_shifted, cancel_requested,
    created_at, updated_at
"""

_FINAL_STATUSES = "('completed', 'failed', 'rolled_back')"

_BOOL_FIELDS = frozenset(
    {"rollback_available", "rolled_back", "live_touched", "traffic_shifted", "cancel_requested"}
)
_JSON_FIELDS = frozenset({"backup", "blue_env", "green_env"})


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dump(value: Backup | Environment | None) -> str | None:
    return json.dumps(value.to_dict()) if value is not None else None


def _load_backup(value: str | None) -> Backup | None:
    return Backup.from_dict(json.loads(value)) if value else None


def _load_env(value: str | None) -> Environment | None:
    return Environment.from_dict(json.loads(value)) if value else None


def _column_value(name: str, value: Any) -> Any:
    """Convert a record field value to its column representation."""
    if name in _BOOL_FIELDS:
        return 1 if value else 0
    if name in _JSON_FIELDS:
        return _dump(value)
    return value


class SQLAlchemyStateStore:
    """
    SQL implementation of StateStore.

    Args:
        conn: AsyncEngine (recommended) or a caller-managed AsyncConnection.
        tracer: Optional tracer for tracing.
        enable_tracing: Whether to enable OpenTelemetry tracing (default True).
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._db_system = dialect_name(conn)
        self._plan_locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _plan_lock(self, plan_id: UUID) -> asyncio.Lock:
        lock = self._plan_locks.get(plan_id)
        if lock is None:
            lock = asyncio.Lock()
            self._plan_locks[plan_id] = lock
        return lock

    @property
    def _for_update(self) -> str:
        return " FOR UPDATE" if self._db_system == "postgresql" else ""

    # =========================================================================
    # Records
    # =========================================================================

    async def create_record(self, record: MigrationRecord) -> UUID:
        """
        Persist a new record.

        Raises:
            ProjectBusyError: If the project already has an active record.
        """
        with self._tracer.span(
            "migrator.state_store.create_record",
            {
                ATTR_PLAN_ID: str(record.plan_id),
                ATTR_PROJECT_ID: record.project_id,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            existing = await self.get_active_for_project(record.project_id)
            if existing is not None:
                raise ProjectBusyError(record.project_id, existing.plan_id)

            query = text(f"""
                INSERT INTO migration_records ({_RECORD_COLUMNS})
                VALUES (
                    :plan_id, :project_id, :strategy, :source_version, :target_version,
                    :status, :progress, :started_at, :completed_at, :backup,
                    :rollback_available, :rolled_back, :error, :failed_stage, :batch_id,
                    :blue_env, :green_env, :live_touched, :traffic_shifted, :cancel_requested,
                    :created_at, :updated_at
                )
            """)  # nosec B608 - column list is a module constant
            params = self._record_params(record)

            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await conn.execute(query, params)
                    for entry in record.log:
                        await self._insert_log(conn, record.plan_id, entry)
            except IntegrityError:
                existing = await self.get_active_for_project(record.project_id)
                if existing is None:
                    raise
                logger.warning(
                    "Concurrent submission for project %s rejected by unique index",
                    record.project_id,
                )
                raise ProjectBusyError(record.project_id, existing.plan_id) from None

            return record.plan_id

    async def get_record(self, plan_id: UUID) -> MigrationRecord | None:
        with self._tracer.span(
            "migrator.state_store.get_record",
            {
                ATTR_PLAN_ID: str(plan_id),
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            query = text(f"""
                SELECT {_RECORD_COLUMNS}
                FROM migration_records
                WHERE plan_id = :plan_id
            """)  # nosec B608 - column list is a module constant

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"plan_id": str(plan_id)})
                row = result.fetchone()

            if row is None:
                return None

            record = self._row_to_record(row)
            record.log = await self.get_log(plan_id)
            return record

    async def get_active_for_project(self, project_id: str) -> MigrationRecord | None:
        """
        Get the project's active record.

        Active means not in a final status (completed, failed, rolled_back).
        """
        query = text(f"""
            SELECT {_RECORD_COLUMNS}
            FROM migration_records
            WHERE project_id = :project_id
              AND status NOT IN {_FINAL_STATUSES}
            LIMIT 1
        """)  # nosec B608 - module constants only

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"project_id": project_id})
            row = result.fetchone()

        return self._row_to_record(row) if row is not None else None

    async def update_status(
        self,
        plan_id: UUID,
        new_status: MigrationStatus,
        *,
        error: str | None = None,
        failed_stage: str | None = None,
    ) -> MigrationRecord:
        """
        Apply a validated status transition.

        Raises:
            MigrationNotFoundError: If the record does not exist.
            InvalidStatusTransitionError: If the transition is invalid.
        """
        with self._tracer.span(
            "migrator.state_store.update_status",
            {
                ATTR_PLAN_ID: str(plan_id),
                ATTR_NEW_STATUS: new_status.value,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            async with self._plan_lock(plan_id):
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    record = await self._select_for_update(conn, plan_id)
                    updated = apply_status(
                        record,
                        new_status,
                        datetime.now(UTC),
                        error=error,
                        failed_stage=failed_stage,
                    )
                    await conn.execute(
                        text("""
                            UPDATE migration_records
                            SET status = :status,
                                progress = :progress,
                                started_at = :started_at,
                                completed_at = :completed_at,
                                error = :error,
                                failed_stage = :failed_stage,
                                rolled_back = :rolled_back,
                                rollback_available = :rollback_available,
                                updated_at = :updated_at
                            WHERE plan_id = :plan_id
                        """),
                        {
                            "plan_id": str(plan_id),
                            "status": updated.status.value,
                            "progress": updated.progress,
                            "started_at": _ts(updated.started_at),
                            "completed_at": _ts(updated.completed_at),
                            "error": updated.error,
                            "failed_stage": updated.failed_stage,
                            "rolled_back": 1 if updated.rolled_back else 0,
                            "rollback_available": 1 if updated.rollback_available else 0,
                            "updated_at": _ts(updated.updated_at),
                        },
                    )
            return updated

    async def update_record(self, plan_id: UUID, **changes: Any) -> MigrationRecord:
        """
        Change non-status fields.

        Raises:
            MigrationNotFoundError: If the record does not exist.
            ValueError: If a field may not be changed this way.
        """
        unknown = set(changes) - MUTABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")

        async with self._plan_lock(plan_id):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                record = await self._select_for_update(conn, plan_id)
                now = datetime.now(UTC)
                updated = replace(record, updated_at=now, **changes)
                if changes:
                    # Column names come from MUTABLE_RECORD_FIELDS only
                    assignments = ", ".join(f"{name} = :{name}" for name in sorted(changes))
                    params = {name: _column_value(name, value) for name, value in changes.items()}
                    params.update({"plan_id": str(plan_id), "updated_at": _ts(now)})
                    await conn.execute(
                        text(f"""
                            UPDATE migration_records
                            SET {assignments}, updated_at = :updated_at
                            WHERE plan_id = :plan_id
                        """),  # nosec B608 - all data values are parameterized
                        params,
                    )
        return updated

    async def list_records(
        self,
        *,
        status: MigrationStatus | None = None,
        project_id: str | None = None,
        batch_id: UUID | None = None,
    ) -> list[MigrationRecord]:
        conditions: list[str] = []
        params: dict[str, Any] = {}
        if status is not None:
            conditions.append("status = :status")
            params["status"] = status.value
        if project_id is not None:
            conditions.append("project_id = :project_id")
            params["project_id"] = project_id
        if batch_id is not None:
            conditions.append("batch_id = :batch_id")
            params["batch_id"] = str(batch_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = text(f"""
            SELECT {_RECORD_COLUMNS}
            FROM migration_records
            {where}
            ORDER BY created_at ASC
        """)  # nosec B608 - conditions are fixed strings, values parameterized

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()

        return [self._row_to_record(row) for row in rows]

    async def list_unfinished(self) -> list[MigrationRecord]:
        query = text(f"""
            SELECT {_RECORD_COLUMNS}
            FROM migration_records
            WHERE status NOT IN {_FINAL_STATUSES}
            ORDER BY created_at ASC
        """)  # nosec B608 - module constants only

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query)
            rows = result.fetchall()

        return [self._row_to_record(row) for row in rows]

    # =========================================================================
    # Log trail
    # =========================================================================

    async def append_log(self, plan_id: UUID, message: str, level: str = "info") -> LogEntry:
        entry = LogEntry(timestamp=datetime.now(UTC), message=message, level=level)
        async with execute_with_connection(self._conn, transactional=True) as conn:
            await self._insert_log(conn, plan_id, entry)
        return entry

    async def get_log(self, plan_id: UUID, limit: int | None = None) -> list[LogEntry]:
        if limit is not None:
            if limit <= 0:
                return []
            query = text("""
                SELECT logged_at, level, message FROM (
                    SELECT id, logged_at, level, message
                    FROM migration_log
                    WHERE plan_id = :plan_id
                    ORDER BY id DESC
                    LIMIT :limit
                ) AS tail
                ORDER BY id ASC
            """)
            params: dict[str, Any] = {"plan_id": str(plan_id), "limit": limit}
        else:
            query = text("""
                SELECT logged_at, level, message
                FROM migration_log
                WHERE plan_id = :plan_id
                ORDER BY id ASC
            """)
            params = {"plan_id": str(plan_id)}

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()

        return [
            LogEntry(timestamp=datetime.fromisoformat(row[0]), level=row[1], message=row[2])
            for row in rows
        ]

    async def _insert_log(self, conn: AsyncConnection, plan_id: UUID, entry: LogEntry) -> None:
        await conn.execute(
            text("""
                INSERT INTO migration_log (plan_id, logged_at, level, message)
                VALUES (:plan_id, :logged_at, :level, :message)
            """),
            {
                "plan_id": str(plan_id),
                "logged_at": entry.timestamp.isoformat(),
                "level": entry.level,
                "message": entry.message,
            },
        )

    # =========================================================================
    # Batches
    # =========================================================================

    async def save_batch(self, batch: BatchRecord) -> None:
        with self._tracer.span(
            "migrator.state_store.save_batch",
            {
                ATTR_BATCH_ID: str(batch.batch_id),
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            query = text("""
                INSERT INTO migration_batches (
                    batch_id, plan_ids, target_version, strategy, concurrency,
                    status, not_started, abort_reason, created_at, completed_at
                ) VALUES (
                    :batch_id, :plan_ids, :target_version, :strategy, :concurrency,
                    :status, :not_started, :abort_reason, :created_at, :completed_at
                )
            """)
            params = {
                "batch_id": str(batch.batch_id),
                "plan_ids": json.dumps([str(p) for p in batch.plan_ids]),
                "target_version": batch.target_version,
                "strategy": batch.strategy.value,
                "concurrency": batch.concurrency,
                "status": batch.status.value,
                "not_started": json.dumps([str(p) for p in batch.not_started]),
                "abort_reason": batch.abort_reason,
                "created_at": _ts(batch.created_at),
                "completed_at": _ts(batch.completed_at),
            }
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def get_batch(self, batch_id: UUID) -> BatchRecord | None:
        query = text("""
            SELECT batch_id, plan_ids, target_version, strategy, concurrency,
                   status, not_started, abort_reason, created_at, completed_at
            FROM migration_batches
            WHERE batch_id = :batch_id
        """)

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"batch_id": str(batch_id)})
            row = result.fetchone()

        if row is None:
            return None

        return BatchRecord(
            batch_id=UUID(row[0]),
            plan_ids=[UUID(p) for p in json.loads(row[1])],
            target_version=row[2],
            strategy=Strategy(row[3]),
            concurrency=row[4],
            status=BatchStatus(row[5]),
            not_started=[UUID(p) for p in json.loads(row[6])],
            abort_reason=row[7],
            created_at=datetime.fromisoformat(row[8]),
            completed_at=_parse_ts(row[9]),
        )

    async def finish_batch(self, batch: BatchRecord) -> None:
        query = text("""
            UPDATE migration_batches
            SET status = :status,
                not_started = :not_started,
                abort_reason = :abort_reason,
                completed_at = :completed_at
            WHERE batch_id = :batch_id
        """)
        async with execute_with_connection(self._conn, transactional=True) as conn:
            await conn.execute(
                query,
                {
                    "batch_id": str(batch.batch_id),
                    "status": batch.status.value,
                    "not_started": json.dumps([str(p) for p in batch.not_started]),
                    "abort_reason": batch.abort_reason,
                    "completed_at": _ts(batch.completed_at),
                },
            )

    # =========================================================================
    # Deferred cleanups
    # =========================================================================

    async def schedule_cleanup(self, ticket: CleanupTicket) -> None:
        query = text("""
            INSERT INTO scheduled_cleanups (
                ticket_id, plan_id, project_id, environment, backup, due_at, completed_at
            ) VALUES (
                :ticket_id, :plan_id, :project_id, :environment, :backup, :due_at, :completed_at
            )
        """)
        async with execute_with_connection(self._conn, transactional=True) as conn:
            await conn.execute(
                query,
                {
                    "ticket_id": str(ticket.ticket_id),
                    "plan_id": str(ticket.plan_id),
                    "project_id": ticket.project_id,
                    "environment": _dump(ticket.environment),
                    "backup": _dump(ticket.backup),
                    "due_at": _ts(ticket.due_at),
                    "completed_at": _ts(ticket.completed_at),
                },
            )

    async def due_cleanups(self, now: datetime) -> list[CleanupTicket]:
        query = text("""
            SELECT ticket_id, plan_id, project_id, environment, backup, due_at, completed_at
            FROM scheduled_cleanups
            WHERE completed_at IS NULL
              AND due_at <= :now
            ORDER BY due_at ASC
        """)
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"now": _ts(now)})
            rows = result.fetchall()
        return [self._row_to_ticket(row) for row in rows]

    async def complete_cleanup(self, ticket_id: UUID, completed_at: datetime) -> None:
        query = text("""
            UPDATE scheduled_cleanups
            SET completed_at = :completed_at
            WHERE ticket_id = :ticket_id
        """)
        async with execute_with_connection(self._conn, transactional=True) as conn:
            await conn.execute(
                query,
                {"ticket_id": str(ticket_id), "completed_at": _ts(completed_at)},
            )

    async def list_cleanups(self, plan_id: UUID | None = None) -> list[CleanupTicket]:
        if plan_id is not None:
            query = text("""
                SELECT ticket_id, plan_id, project_id, environment, backup, due_at, completed_at
                FROM scheduled_cleanups
                WHERE plan_id = :plan_id
                ORDER BY due_at ASC
            """)
            params: dict[str, Any] = {"plan_id": str(plan_id)}
        else:
            query = text("""
                SELECT ticket_id, plan_id, project_id, environment, backup, due_at, completed_at
                FROM scheduled_cleanups
                ORDER BY due_at ASC
            """)
            params = {}
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()
        return [self._row_to_ticket(row) for row in rows]

    # =========================================================================
    # Row mapping
    # =========================================================================

    async def _select_for_update(self, conn: AsyncConnection, plan_id: UUID) -> MigrationRecord:
        query = text(f"""
            SELECT {_RECORD_COLUMNS}
            FROM migration_records
            WHERE plan_id = :plan_id{self._for_update}
        """)  # nosec B608 - module constants only
        result = await conn.execute(query, {"plan_id": str(plan_id)})
        row = result.fetchone()
        if row is None:
            raise MigrationNotFoundError(plan_id)
        return self._row_to_record(row)

    def _record_params(self, record: MigrationRecord) -> dict[str, Any]:
        return {
            "plan_id": str(record.plan_id),
            "project_id": record.project_id,
            "strategy": record.strategy.value,
            "source_version": record.source_version,
            "target_version": record.target_version,
            "status": record.status.value,
            "progress": record.progress,
            "started_at": _ts(record.started_at),
            "completed_at": _ts(record.completed_at),
            "backup": _dump(record.backup),
            "rollback_available": 1 if record.rollback_available else 0,
            "rolled_back": 1 if record.rolled_back else 0,
            "error": record.error,
            "failed_stage": record.failed_stage,
            "batch_id": str(record.batch_id) if record.batch_id else None,
            "blue_env": _dump(record.blue_env),
            "green_env": _dump(record.green_env),
            "live_touched": 1 if record.live_touched else 0,
            "traffic_shifted": 1 if record.traffic_shifted else 0,
            "cancel_requested": 1 if record.cancel_requested else 0,
            "created_at": _ts(record.created_at),
            "updated_at": _ts(record.updated_at),
        }

    def _row_to_record(self, row: Any) -> MigrationRecord:
        """Convert a database row (in _RECORD_COLUMNS order) to a MigrationRecord."""
        return MigrationRecord(
            plan_id=UUID(row[0]),
            project_id=row[1],
            strategy=Strategy(row[2]),
            source_version=row[3],
            target_version=row[4],
            status=MigrationStatus(row[5]),
            progress=row[6],
            started_at=_parse_ts(row[7]),
            completed_at=_parse_ts(row[8]),
            backup=_load_backup(row[9]),
            rollback_available=bool(row[10]),
            rolled_back=bool(row[11]),
            error=row[12],
            failed_stage=row[13],
            batch_id=UUID(row[14]) if row[14] else None,
            blue_env=_load_env(row[15]),
            green_env=_load_env(row[16]),
            live_touched=bool(row[17]),
            traffic_shifted=bool(row[18]),
            cancel_requested=bool(row[19]),
            created_at=datetime.fromisoformat(row[20]),
            updated_at=datetime.fromisoformat(row[21]),
        )

    def _row_to_ticket(self, row: Any) -> CleanupTicket:
        return CleanupTicket(
            ticket_id=UUID(row[0]),
            plan_id=UUID(row[1]),
            project_id=row[2],
            environment=_load_env(row[3]),
            backup=_load_backup(row[4]),
            due_at=datetime.fromisoformat(row[5]),
            completed_at=_parse_ts(row[6]),
        )


__all__ = ["SQLAlchemyStateStore"]
