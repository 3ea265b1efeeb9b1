"""
Durable State Store for migration records, log trails, bulk submissions
and deferred cleanups.

Implementations:
    - InMemoryStateStore: Process-local, for tests and development
    - SQLAlchemyStateStore: PostgreSQL (asyncpg) or SQLite (aiosqlite)
"""

from migrator.stores.in_memory import InMemoryStateStore
from migrator.stores.interface import (
    MUTABLE_RECORD_FIELDS,
    VALID_TRANSITIONS,
    StateStore,
    apply_status,
    is_valid_transition,
)
from migrator.stores.schema import create_schema, get_schema, get_statements
from migrator.stores.sql import SQLAlchemyStateStore

__all__ = [
    "StateStore",
    "InMemoryStateStore",
    "SQLAlchemyStateStore",
    "VALID_TRANSITIONS",
    "MUTABLE_RECORD_FIELDS",
    "apply_status",
    "is_valid_transition",
    "create_schema",
    "get_schema",
    "get_statements",
]
