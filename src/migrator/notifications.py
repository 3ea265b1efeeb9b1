"""
Lifecycle notifications and their best-effort dispatcher.

Notifications are immutable pydantic models describing something that
happened to a migration or a bulk submission. The engine hands them to a
NotificationDispatcher, which delivers each one to the configured
Notifier in a background task so a slow or failing notifier can never
stall or fail a migration.

Example:
    >>> dispatcher = NotificationDispatcher(notifier)
    >>> dispatcher.dispatch(MigrationCompleted(plan_id=plan.plan_id, project_id="p1"))
    >>> await dispatcher.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from migrator.interfaces import Notifier

logger = logging.getLogger(__name__)

Severity = Literal["info", "warning", "critical"]


class MigrationNotification(BaseModel):
    """
    Base class for all lifecycle notifications.

    The notification_type field is derived from the class name when not
    set explicitly.

    Attributes:
        notification_id: Unique identifier for this notification.
        notification_type: Type name (class name by default).
        severity: Routing hint for the delivery channel.
        occurred_at: When it happened (UTC).
        plan_id: Plan concerned, if any.
        project_id: Project concerned, if any.
        message: Human-readable summary.
        details: Additional structured context.
    """

    model_config = ConfigDict(frozen=True)

    notification_id: UUID = Field(default_factory=uuid4)
    notification_type: str = Field(default="")
    severity: Severity = "info"
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    plan_id: UUID | None = None
    project_id: str | None = None
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _ensure_notification_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("notification_type"):
            data = {**data, "notification_type": cls.__name__}
        return data


class MigrationStarted(MigrationNotification):
    target_version: str


class MigrationCompleted(MigrationNotification):
    target_version: str | None = None


class MigrationFailed(MigrationNotification):
    """A migration ended failed without touching the live environment."""

    severity: Severity = "warning"
    stage: str | None = None
    error: str | None = None


class MigrationCancelled(MigrationNotification):
    severity: Severity = "warning"


class MigrationRolledBack(MigrationNotification):
    """A migration was rolled back and its prior state restored."""

    severity: Severity = "warning"
    stage: str | None = None
    error: str | None = None


class RollbackFailed(MigrationNotification):
    """
    A rollback failed: the project may be in an undefined state.

    Always critical; delivery channels should page an operator.
    """

    severity: Severity = "critical"
    error: str


class BatchCompleted(MigrationNotification):
    batch_id: UUID
    successful: int
    failed: int


class BatchHalted(MigrationNotification):
    """The bulk scheduler stopped dispatching because too many plans failed."""

    severity: Severity = "warning"
    batch_id: UUID
    failure_rate: float
    not_started: int


class NotificationDispatcher:
    """
    Delivers notifications in background tasks.

    Notifier errors are logged and counted, never propagated. Without a
    notifier every dispatch is dropped.
    """

    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier = notifier
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._stats = {
            "dispatched": 0,
            "delivered": 0,
            "delivery_errors": 0,
        }

    def dispatch(self, notification: MigrationNotification) -> None:
        """
        Schedule delivery of a notification.

        Must be called from within a running event loop.

        Args:
            notification: The notification to deliver.
        """
        if self._notifier is None:
            return
        self._stats["dispatched"] += 1
        task = asyncio.create_task(self._deliver(notification))
        task.add_done_callback(self._on_background_task_done)
        self._background_tasks.add(task)

    async def _deliver(self, notification: MigrationNotification) -> None:
        assert self._notifier is not None
        try:
            await self._notifier.notify(notification)
        except Exception as e:
            self._stats["delivery_errors"] += 1
            logger.error(
                "Failed to deliver %s notification for plan %s: %s",
                notification.notification_type,
                notification.plan_id,
                e,
                exc_info=True,
            )
        else:
            self._stats["delivered"] += 1

    def _on_background_task_done(self, task: asyncio.Task[None]) -> None:
        self._background_tasks.discard(task)

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)

    def get_background_task_count(self) -> int:
        return len(self._background_tasks)

    async def drain(self) -> None:
        """Wait until every notification dispatched so far has been handled."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Wait for pending deliveries, then cancel whatever is left.

        Args:
            timeout: Maximum time to wait in seconds.
        """
        if not self._background_tasks:
            return

        logger.info(
            "Shutting down notification dispatcher, waiting for %d delivery task(s)",
            len(self._background_tasks),
        )
        pending = list(self._background_tasks)
        _, remaining = await asyncio.wait(
            pending,
            timeout=timeout,
            return_when=asyncio.ALL_COMPLETED,
        )
        if remaining:
            logger.warning(
                "Notification dispatcher shutdown: %d delivery task(s) did not complete "
                "within timeout",
                len(remaining),
            )
            for task in remaining:
                task.cancel()


__all__ = [
    "MigrationNotification",
    "MigrationStarted",
    "MigrationCompleted",
    "MigrationFailed",
    "MigrationCancelled",
    "MigrationRolledBack",
    "RollbackFailed",
    "BatchCompleted",
    "BatchHalted",
    "NotificationDispatcher",
]
