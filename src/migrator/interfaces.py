"""
Collaborator protocols consumed by the migration engine.

The engine never provisions compute, copies bytes or flips load balancers
itself. It drives external services through these narrow interfaces,
which deployments implement against their own infrastructure. Any
implementation may raise CollaboratorUnavailableError for temporary
outages; the engine retries those with backoff.

Protocols:
    - BackupStore: Snapshots of a project's data
    - Provisioner: Isolated runtime + data environments
    - Replicator: Physical data copy and catch-up sync
    - TrafficRouter: Traffic switching, shifting, mirroring and write pauses
    - Deployer: Application deployment and data-shape changes
    - SmokeTester: Functional smoke checks against an environment
    - DataInspector: Record counts and record samples for integrity checks
    - HealthMonitor: Health observations during monitoring windows
    - Notifier: Best-effort lifecycle notifications
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from migrator.models import Backup, Environment, HealthReport

if TYPE_CHECKING:
    from migrator.notifications import MigrationNotification


@runtime_checkable
class BackupStore(Protocol):
    """Creates and restores point-in-time snapshots of a project."""

    async def create(self, project_id: str) -> Backup:
        """Take a snapshot of the project's current data."""
        ...

    async def restore(self, project_id: str, backup: Backup) -> None:
        """Restore a snapshot into the project's original environment."""
        ...

    async def recent(self, project_id: str) -> Backup | None:
        """Return the most recent snapshot, or None if there is none."""
        ...

    async def discard(self, backup: Backup) -> None:
        """Release a snapshot that is no longer needed."""
        ...


@runtime_checkable
class Provisioner(Protocol):
    """Creates and destroys isolated environments."""

    async def create(self, project_id: str, version: str) -> Environment:
        """Provision a new environment running the given version."""
        ...

    async def destroy(self, env: Environment) -> None:
        """Destroy an environment. Destroying a missing environment is a no-op."""
        ...

    async def current(self, project_id: str) -> Environment:
        """Return the environment currently serving the project."""
        ...

    async def available_capacity(self, project_id: str) -> int:
        """Resource units the project may still allocate."""
        ...


@runtime_checkable
class Replicator(Protocol):
    """Moves data between environments."""

    async def bulk_copy(self, src: Environment, dst: Environment) -> None:
        """Copy all data from src to dst."""
        ...

    async def incremental_sync(self, src: Environment, dst: Environment) -> None:
        """Copy changes made on src since the last copy or sync."""
        ...

    async def is_reachable(self, env: Environment) -> bool:
        """Check that the environment's data is reachable for replication."""
        ...


@runtime_checkable
class TrafficRouter(Protocol):
    """Controls where a project's traffic goes."""

    async def switch(self, from_env: Environment, to_env: Environment) -> bool:
        """Atomically route all traffic from one environment to another."""
        ...

    async def shift(self, from_env: Environment, to_env: Environment, percent: int) -> bool:
        """Route the given share of traffic to to_env, the rest to from_env."""
        ...

    async def mirror(self, from_env: Environment, to_env: Environment, enabled: bool) -> None:
        """Start or stop mirroring read traffic from one environment to another."""
        ...

    async def pause_writes(self, env: Environment) -> None:
        """Reject or queue writes on an environment."""
        ...

    async def resume_writes(self, env: Environment) -> None:
        """Accept writes on an environment again."""
        ...


@runtime_checkable
class Deployer(Protocol):
    """Deploys application versions."""

    async def deploy(self, env: Environment, version: str) -> None:
        """Deploy an application version onto an environment."""
        ...

    async def apply_data_changes(
        self,
        env: Environment,
        from_version: str,
        to_version: str,
    ) -> None:
        """Apply the data-shape changes between two versions."""
        ...

    async def has_pending_deployment(self, project_id: str) -> bool:
        """Check whether a deployment is queued or running for the project."""
        ...


@runtime_checkable
class SmokeTester(Protocol):
    async def run(self, env: Environment) -> list[str]:
        """Run smoke checks; return failure reasons (empty when all pass)."""
        ...


@runtime_checkable
class DataInspector(Protocol):
    """Read-only view of an environment's data, used for integrity checks."""

    async def record_counts(self, env: Environment) -> dict[str, int]:
        """Return the number of records per collection."""
        ...

    async def sample_records(
        self,
        env: Environment,
        collection: str,
        keys: list[str] | None = None,
        limit: int = 25,
    ) -> dict[str, dict]:
        """
        Return records keyed by record key.

        When keys is given, return exactly those records (missing keys are
        absent from the result); otherwise return up to limit records.
        """
        ...


@runtime_checkable
class HealthMonitor(Protocol):
    async def check(self, env: Environment) -> HealthReport:
        """Observe the environment once."""
        ...


@runtime_checkable
class Notifier(Protocol):
    """
    Delivers lifecycle notifications.

    Delivery is best effort: the engine dispatches in the background and
    logs, never propagates, notifier errors.
    """

    async def notify(self, event: MigrationNotification) -> None: ...


__all__ = [
    "BackupStore",
    "Provisioner",
    "Replicator",
    "TrafficRouter",
    "Deployer",
    "SmokeTester",
    "DataInspector",
    "HealthMonitor",
    "Notifier",
]
