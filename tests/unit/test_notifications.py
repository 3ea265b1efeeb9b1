"""
Unit tests for lifecycle notifications and the NotificationDispatcher.
"""

import asyncio
from uuid import uuid4

import pytest
from pydantic import ValidationError

from migrator.models import MigrationRequest, MigrationStatus
from migrator.notifications import (
    BatchHalted,
    MigrationCompleted,
    MigrationFailed,
    MigrationStarted,
    NotificationDispatcher,
    RollbackFailed,
)
from tests.fixtures import RecordingNotifier


class TestNotificationModels:
    def test_type_defaults_to_class_name(self):
        event = MigrationCompleted(plan_id=uuid4(), project_id="p1")
        assert event.notification_type == "MigrationCompleted"

    def test_explicit_type_is_kept(self):
        event = MigrationCompleted(notification_type="custom")
        assert event.notification_type == "custom"

    def test_severity_defaults(self):
        assert MigrationStarted(target_version="v2").severity == "info"
        assert MigrationFailed().severity == "warning"
        assert RollbackFailed(error="boom").severity == "critical"

    def test_frozen(self):
        event = MigrationFailed(stage="testing")
        with pytest.raises(ValidationError):
            event.stage = "monitoring"

    def test_required_fields(self):
        with pytest.raises(ValidationError):
            BatchHalted(batch_id=uuid4())

    def test_json_round_trip_keeps_type(self):
        event = MigrationFailed(plan_id=uuid4(), project_id="p1", stage="testing", error="x")
        restored = MigrationFailed.model_validate_json(event.model_dump_json())
        assert restored == event


class TestDispatcher:
    async def test_delivers_in_background(self):
        notifier = RecordingNotifier()
        dispatcher = NotificationDispatcher(notifier)

        dispatcher.dispatch(MigrationCompleted(project_id="p1"))
        assert dispatcher.get_background_task_count() == 1
        await dispatcher.drain()

        assert notifier.types() == ["MigrationCompleted"]
        assert dispatcher.get_background_task_count() == 0
        assert dispatcher.get_stats() == {"dispatched": 1, "delivered": 1, "delivery_errors": 0}

    async def test_delivery_errors_are_counted_not_raised(self):
        dispatcher = NotificationDispatcher(RecordingNotifier(fail=True))

        dispatcher.dispatch(MigrationCompleted(project_id="p1"))
        await dispatcher.drain()

        assert dispatcher.get_stats()["delivery_errors"] == 1

    async def test_without_notifier_dispatch_is_dropped(self):
        dispatcher = NotificationDispatcher()
        dispatcher.dispatch(MigrationCompleted(project_id="p1"))
        assert dispatcher.get_stats()["dispatched"] == 0

    async def test_shutdown_cancels_slow_deliveries(self):
        class SlowNotifier:
            async def notify(self, event):
                await asyncio.sleep(10)

        dispatcher = NotificationDispatcher(SlowNotifier())
        dispatcher.dispatch(MigrationCompleted(project_id="p1"))

        await dispatcher.shutdown(timeout=0.01)
        await asyncio.sleep(0)

        assert dispatcher.get_stats()["delivered"] == 0

    async def test_migration_completes_when_notifier_fails(self, collaborators, engine):
        collaborators.notifier.fail = True
        plan_id = await engine.submit(MigrationRequest("p1", "v2"))
        record = await engine.wait(plan_id, timeout=5.0)
        await engine.dispatcher.drain()

        assert record.status == MigrationStatus.COMPLETED
        assert engine.dispatcher.get_stats()["delivery_errors"] == 2
