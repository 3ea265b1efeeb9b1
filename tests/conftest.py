"""
Shared pytest fixtures for the migrator tests.

This module provides:
- Engine configuration tuned for fast tests (fast_config)
- Collaborator fakes (collaborators)
- State stores (in_memory_store, sqlite_store, state_store parametrized over both)
- Engine and component fixtures (engine, metrics, dispatcher)
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from migrator import metrics as migrator_metrics
from migrator.config import EngineConfig
from migrator.engine import MigrationEngine
from migrator.exceptions import RetryConfig
from migrator.metrics import EngineMetrics
from migrator.notifications import NotificationDispatcher
from migrator.stores import InMemoryStateStore, SQLAlchemyStateStore, StateStore, create_schema
from tests.fixtures import FakeCollaborators

# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine config with zero-length windows and no retry delays."""
    return EngineConfig(
        monitoring_window_seconds=0.0,
        monitoring_poll_interval_seconds=0.01,
        health_watch_seconds=0.0,
        retry=RetryConfig(max_attempts=3, base_delay_ms=0.0, max_delay_ms=0.0, jitter_factor=0.0),
    )


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def collaborators() -> FakeCollaborators:
    return FakeCollaborators()


# ============================================================================
# Stores
# ============================================================================


@pytest.fixture
def in_memory_store() -> InMemoryStateStore:
    return InMemoryStateStore(enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the migrator schema applied."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    async with engine.begin() as conn:
        await create_schema(conn)
    yield engine
    await engine.dispose()


@pytest.fixture
def sqlite_store(sqlite_engine: AsyncEngine) -> SQLAlchemyStateStore:
    return SQLAlchemyStateStore(sqlite_engine, enable_tracing=False)


@pytest.fixture(params=["memory", "sqlite"])
def state_store(request: pytest.FixtureRequest) -> StateStore:
    """Each StateStore implementation in turn."""
    if request.param == "memory":
        return InMemoryStateStore(enable_tracing=False)
    return request.getfixturevalue("sqlite_store")


# ============================================================================
# Engine
# ============================================================================


@pytest.fixture
def metrics() -> EngineMetrics:
    return EngineMetrics(enable_metrics=False)


@pytest.fixture
def dispatcher(collaborators: FakeCollaborators) -> NotificationDispatcher:
    return NotificationDispatcher(collaborators.notifier)


@pytest_asyncio.fixture
async def engine(
    collaborators: FakeCollaborators,
    in_memory_store: InMemoryStateStore,
    fast_config: EngineConfig,
    metrics: EngineMetrics,
) -> AsyncGenerator[MigrationEngine, None]:
    engine = MigrationEngine(
        **collaborators.engine_kwargs(),
        store=in_memory_store,
        config=fast_config,
        metrics=metrics,
        enable_tracing=False,
    )
    yield engine
    await engine.shutdown(timeout=5.0)


# ============================================================================
# OpenTelemetry metrics
# ============================================================================


@pytest.fixture
def metric_reader(monkeypatch: pytest.MonkeyPatch) -> Generator[InMemoryMetricReader, None, None]:
    """
    Route migrator metrics to an SDK MeterProvider with an in-memory reader.

    The migrator meter is replaced directly so the global provider is left
    untouched.
    """
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    monkeypatch.setattr(migrator_metrics, "_meter", provider.get_meter("migrator"))
    yield reader
    provider.shutdown()
