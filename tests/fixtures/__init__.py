"""
Shared test fixtures for the migrator test suite.

Provides collaborator fakes with call recording and failure injection,
and helpers for building plans and records without a planner.
"""

from tests.fixtures.collaborators import (
    SOURCE_VERSION,
    FakeBackupStore,
    FakeCollaborators,
    FakeDeployer,
    FakeHealthMonitor,
    FakeInspector,
    FakeProvisioner,
    FakeReplicator,
    FakeRouter,
    FakeSmokeTester,
    RecordingNotifier,
)
from tests.fixtures.plans import make_plan, make_record

__all__ = [
    "SOURCE_VERSION",
    "FakeBackupStore",
    "FakeCollaborators",
    "FakeDeployer",
    "FakeHealthMonitor",
    "FakeInspector",
    "FakeProvisioner",
    "FakeReplicator",
    "FakeRouter",
    "FakeSmokeTester",
    "RecordingNotifier",
    "make_plan",
    "make_record",
]
