"""
SQL schema for the durable State Store.

Tables:
    - migration_records: One row per plan, keyed by plan id
    - migration_log: Append-only log trail entries
    - migration_batches: Bulk submission membership and outcome
    - scheduled_cleanups: Deferred environment cleanups

Identifiers and timestamps are stored as TEXT (hyphenated UUIDs and ISO
8601 UTC timestamps) and structured values as JSON text, so the same
queries run unchanged on PostgreSQL and SQLite.

A partial unique index on migration_records(project_id) over non-final
statuses enforces at most one active migration per project.

Usage:
    >>> from migrator.stores.schema import create_schema
    >>> async with engine.begin() as conn:
    ...     await create_schema(conn)
"""

from __future__ import annotations

from typing import Literal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

BackendName = Literal["postgresql", "sqlite"]

_FINAL_STATUSES = "('completed', 'failed', 'rolled_back')"

_LOG_ID_COLUMN: dict[str, str] = {
    "postgresql": "id BIGSERIAL PRIMARY KEY",
    "sqlite": "id INTEGER PRIMARY KEY AUTOINCREMENT",
}


def get_statements(backend: BackendName = "postgresql") -> list[str]:
    """
    Return the DDL statements for a backend, in execution order.

    Args:
        backend: The database backend (postgresql, sqlite)

    Returns:
        List of individual SQL statements.
    """
    if backend not in _LOG_ID_COLUMN:
        raise ValueError(f"Unsupported backend: {backend}")

    return [
        """
        CREATE TABLE IF NOT EXISTS migration_records (
            plan_id VARCHAR(36) PRIMARY KEY,
            project_id VARCHAR(255) NOT NULL,
            strategy VARCHAR(32) NOT NULL,
            source_version VARCHAR(255) NOT NULL,
            target_version VARCHAR(255) NOT NULL,
            status VARCHAR(32) NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            started_at VARCHAR(40),
            completed_at VARCHAR(40),
            backup TEXT,
            rollback_available INTEGER NOT NULL DEFAULT 0,
            rolled_back INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            failed_stage VARCHAR(32),
            batch_id VARCHAR(36),
            blue_env TEXT,
            green_env TEXT,
            live_touched INTEGER NOT NULL DEFAULT 0,
            traffic_shifted INTEGER NOT NULL DEFAULT 0,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            created_at VARCHAR(40) NOT NULL,
            updated_at VARCHAR(40) NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_migration_records_project "
        "ON migration_records (project_id)",
        "CREATE INDEX IF NOT EXISTS idx_migration_records_status_started "
        "ON migration_records (status, started_at)",
        "CREATE INDEX IF NOT EXISTS idx_migration_records_batch "
        "ON migration_records (batch_id)",
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_migration_records_active_project "
        f"ON migration_records (project_id) WHERE status NOT IN {_FINAL_STATUSES}",
        f"""
        CREATE TABLE IF NOT EXISTS migration_log (
            {_LOG_ID_COLUMN[backend]},
            plan_id VARCHAR(36) NOT NULL,
            logged_at VARCHAR(40) NOT NULL,
            level VARCHAR(16) NOT NULL,
            message TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_migration_log_plan ON migration_log (plan_id, id)",
        """
        CREATE TABLE IF NOT EXISTS migration_batches (
            batch_id VARCHAR(36) PRIMARY KEY,
            plan_ids TEXT NOT NULL,
            target_version VARCHAR(255) NOT NULL,
            strategy VARCHAR(32) NOT NULL,
            concurrency INTEGER NOT NULL,
            status VARCHAR(16) NOT NULL,
            not_started TEXT NOT NULL,
            abort_reason TEXT,
            created_at VARCHAR(40) NOT NULL,
            completed_at VARCHAR(40)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS scheduled_cleanups (
            ticket_id VARCHAR(36) PRIMARY KEY,
            plan_id VARCHAR(36) NOT NULL,
            project_id VARCHAR(255) NOT NULL,
            environment TEXT,
            backup TEXT,
            due_at VARCHAR(40) NOT NULL,
            completed_at VARCHAR(40)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_scheduled_cleanups_due "
        "ON scheduled_cleanups (completed_at, due_at)",
    ]


def get_schema(backend: BackendName = "postgresql") -> str:
    """Return the full schema as one SQL script."""
    return ";\n".join(statement.strip() for statement in get_statements(backend)) + ";\n"


async def create_schema(conn: AsyncConnection) -> None:
    """
    Create all State Store tables and indexes if they do not exist.

    The backend is taken from the connection's dialect.

    Args:
        conn: Open connection (inside a transaction for atomic setup).
    """
    backend: BackendName = "sqlite" if conn.dialect.name == "sqlite" else "postgresql"
    for statement in get_statements(backend):
        await conn.execute(text(statement))


__all__ = ["get_statements", "get_schema", "create_schema"]
