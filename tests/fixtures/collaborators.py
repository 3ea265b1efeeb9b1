"""
In-memory fakes of the engine's external collaborators.

Every fake records its calls so tests can assert on side effects, and
exposes simple knobs to inject failures for specific projects.

The fakes share one notion of project data: each project has a single
``users`` collection whose size is set per project (default 3). Green
environments hold an identical copy unless the project is listed in
``FakeInspector.corrupted``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from migrator.exceptions import CollaboratorUnavailableError
from migrator.models import Backup, Environment, HealthReport
from migrator.notifications import MigrationNotification

SOURCE_VERSION = "v1"


class FakeProvisioner:
    """Creates numbered green environments; every project starts on a blue v1 env."""

    def __init__(self, capacity: int = 10) -> None:
        self.capacity = capacity
        self.environments: dict[str, Environment] = {}
        self.created: list[Environment] = []
        self.destroyed: list[Environment] = []
        self.create_attempts = 0
        self.fail_create: dict[str, Exception] = {}
        self.transient_create_failures = 0
        self.fail_destroy: dict[str, Exception] = {}

    async def current(self, project_id: str) -> Environment:
        env = self.environments.get(project_id)
        if env is None:
            env = Environment(f"{project_id}-blue", project_id, SOURCE_VERSION)
            self.environments[project_id] = env
        return env

    async def create(self, project_id: str, version: str) -> Environment:
        self.create_attempts += 1
        if self.transient_create_failures > 0:
            self.transient_create_failures -= 1
            raise CollaboratorUnavailableError("provision")
        if project_id in self.fail_create:
            raise self.fail_create[project_id]
        env = Environment(f"{project_id}-green-{len(self.created) + 1}", project_id, version)
        self.created.append(env)
        return env

    async def destroy(self, env: Environment) -> None:
        if env.project_id in self.fail_destroy:
            raise self.fail_destroy[env.project_id]
        self.destroyed.append(env)

    async def available_capacity(self, project_id: str) -> int:
        return self.capacity


class FakeReplicator:
    """Records copies; optionally blocks bulk copies on a gate and tracks concurrency."""

    def __init__(self, copy_delay: float = 0.0) -> None:
        self.copy_delay = copy_delay
        self.copies: list[tuple[Environment, Environment]] = []
        self.syncs: list[tuple[Environment, Environment]] = []
        self.unreachable: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.copy_started = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    async def bulk_copy(self, src: Environment, dst: Environment) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.copy_started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.copy_delay:
                await asyncio.sleep(self.copy_delay)
            self.copies.append((src, dst))
        finally:
            self.in_flight -= 1

    async def incremental_sync(self, src: Environment, dst: Environment) -> None:
        self.syncs.append((src, dst))

    async def is_reachable(self, env: Environment) -> bool:
        return env.project_id not in self.unreachable


class FakeRouter:
    """Records every routing call as (operation, *env_ids)."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.refuse_switch: set[str] = set()

    async def switch(self, from_env: Environment, to_env: Environment) -> bool:
        self.calls.append(("switch", from_env.env_id, to_env.env_id))
        return to_env.project_id not in self.refuse_switch

    async def shift(self, from_env: Environment, to_env: Environment, percent: int) -> bool:
        self.calls.append(("shift", from_env.env_id, to_env.env_id, percent))
        return True

    async def mirror(self, from_env: Environment, to_env: Environment, enabled: bool) -> None:
        self.calls.append(("mirror", from_env.env_id, to_env.env_id, enabled))

    async def pause_writes(self, env: Environment) -> None:
        self.calls.append(("pause_writes", env.env_id))

    async def resume_writes(self, env: Environment) -> None:
        self.calls.append(("resume_writes", env.env_id))

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeBackupStore:
    """Hands out numbered backups; every project has a fresh recent backup by default."""

    def __init__(self) -> None:
        self.created: list[Backup] = []
        self.restored: list[tuple[str, Backup]] = []
        self.discarded: list[Backup] = []
        self.stale: set[str] = set()
        self.missing: set[str] = set()
        self.fail_create: dict[str, Exception] = {}
        self.fail_restore: Exception | None = None

    async def create(self, project_id: str) -> Backup:
        if project_id in self.fail_create:
            raise self.fail_create[project_id]
        backup = Backup(f"backup-{len(self.created) + 1}", project_id)
        self.created.append(backup)
        return backup

    async def restore(self, project_id: str, backup: Backup) -> None:
        if self.fail_restore is not None:
            raise self.fail_restore
        self.restored.append((project_id, backup))

    async def recent(self, project_id: str) -> Backup | None:
        if project_id in self.missing:
            return None
        age = timedelta(hours=48) if project_id in self.stale else timedelta(hours=1)
        return Backup(f"{project_id}-nightly", project_id, datetime.now(UTC) - age)

    async def discard(self, backup: Backup) -> None:
        self.discarded.append(backup)


class FakeDeployer:
    def __init__(self) -> None:
        self.deployments: list[tuple[str, str]] = []
        self.data_changes: list[tuple[str, str, str]] = []
        self.pending: set[str] = set()

    async def deploy(self, env: Environment, version: str) -> None:
        self.deployments.append((env.env_id, version))

    async def apply_data_changes(
        self, env: Environment, from_version: str, to_version: str
    ) -> None:
        self.data_changes.append((env.env_id, from_version, to_version))

    async def has_pending_deployment(self, project_id: str) -> bool:
        return project_id in self.pending


class FakeSmokeTester:
    def __init__(self) -> None:
        self.failures: dict[str, list[str]] = {}
        self.runs: list[str] = []

    async def run(self, env: Environment) -> list[str]:
        self.runs.append(env.env_id)
        return list(self.failures.get(env.project_id, []))


class FakeInspector:
    """Serves the same ``users`` collection for blue and green environments."""

    def __init__(self, default_count: int = 3) -> None:
        self.default_count = default_count
        self.counts: dict[str, int] = {}
        self.corrupted: set[str] = set()

    def _records(self, env: Environment) -> dict[str, dict[str, Any]]:
        count = self.counts.get(env.project_id, self.default_count)
        records = {f"u{i}": {"id": i, "name": f"user {i}"} for i in range(count)}
        if env.project_id in self.corrupted and "green" in env.env_id and records:
            first = next(iter(records))
            records[first] = {**records[first], "name": "corrupted"}
        return records

    async def record_counts(self, env: Environment) -> dict[str, int]:
        return {"users": len(self._records(env))}

    async def sample_records(
        self,
        env: Environment,
        collection: str,
        keys: list[str] | None = None,
        limit: int = 25,
    ) -> dict[str, dict[str, Any]]:
        records = self._records(env) if collection == "users" else {}
        if keys is not None:
            return {key: records[key] for key in keys if key in records}
        return dict(list(records.items())[:limit])


class FakeHealthMonitor:
    """Healthy and conclusive by default; unhealthy for listed projects."""

    def __init__(self) -> None:
        self.unhealthy: dict[str, str] = {}
        self.conclusive = True
        self.checks: list[str] = []

    async def check(self, env: Environment) -> HealthReport:
        self.checks.append(env.env_id)
        reason = self.unhealthy.get(env.project_id)
        if reason is not None:
            return HealthReport(healthy=False, conclusive=True, reason=reason)
        return HealthReport(healthy=True, conclusive=self.conclusive)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[MigrationNotification] = []

    async def notify(self, event: MigrationNotification) -> None:
        if self.fail:
            raise RuntimeError("notification channel down")
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.notification_type for event in self.events]


@dataclass
class FakeCollaborators:
    """Bundle of every fake, wired the way MigrationEngine expects."""

    provisioner: FakeProvisioner = field(default_factory=FakeProvisioner)
    replicator: FakeReplicator = field(default_factory=FakeReplicator)
    router: FakeRouter = field(default_factory=FakeRouter)
    backup_store: FakeBackupStore = field(default_factory=FakeBackupStore)
    deployer: FakeDeployer = field(default_factory=FakeDeployer)
    smoke_tester: FakeSmokeTester = field(default_factory=FakeSmokeTester)
    inspector: FakeInspector = field(default_factory=FakeInspector)
    health_monitor: FakeHealthMonitor = field(default_factory=FakeHealthMonitor)
    notifier: RecordingNotifier = field(default_factory=RecordingNotifier)

    def engine_kwargs(self) -> dict[str, Any]:
        return {
            "provisioner": self.provisioner,
            "replicator": self.replicator,
            "router": self.router,
            "backup_store": self.backup_store,
            "deployer": self.deployer,
            "smoke_tester": self.smoke_tester,
            "inspector": self.inspector,
            "health_monitor": self.health_monitor,
            "notifier": self.notifier,
        }


__all__ = [
    "SOURCE_VERSION",
    "FakeProvisioner",
    "FakeReplicator",
    "FakeRouter",
    "FakeBackupStore",
    "FakeDeployer",
    "FakeSmokeTester",
    "FakeInspector",
    "FakeHealthMonitor",
    "RecordingNotifier",
    "FakeCollaborators",
]
