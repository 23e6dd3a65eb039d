import asyncio
import pytest
from unittest.mock import Mock, patch

from app import cli
from app.config.settings import settings
from app.db.models import ScheduledNotificationStatus as Status
from app.schemas.dispatch_schemas import DeliveryFailure, DispatchReport
from app.services.notifications.dispatcher import NotificationDispatcher
from app.tasks.cron.scheduled_notification_dispatcher import (
    _async_dispatch_scheduled_notifications,
)

from conftest import notification_data

ONCE = {"type": "once", "anchor_datetime": "2025-01-10T09:00:00Z"}


@pytest.fixture
def due_records(service, admin, school_directory):
    """Three one-off notifications that are long past due by the wall clock."""
    return [
        asyncio.run(service.create(notification_data(ONCE, name=f"Reminder {i}"), admin))
        for i in range(3)
    ]


@pytest.fixture
def dispatcher_factory(session_factory, adapters):
    """Stands in for NotificationDispatcher() and remembers every instance it built."""
    built = []

    def factory():
        dispatcher = NotificationDispatcher(
            session_factory=session_factory, adapters=adapters.registry()
        )
        built.append(dispatcher)
        return dispatcher

    factory.built = built
    return factory


def statuses(service, admin, records):
    return [asyncio.run(service.get(record.id, admin)).status for record in records]


class TestProcessDueCommand:
    def test_refuses_outside_production_without_force(
        self, service, admin, due_records, dispatcher_factory, adapters
    ):
        with patch.object(settings, "ENVIRONMENT", "development"), patch(
            "app.cli.NotificationDispatcher", dispatcher_factory
        ):
            exit_code = cli.main(["process-due"])

        assert exit_code == 1
        assert dispatcher_factory.built == []
        assert adapters.sent == []
        assert statuses(service, admin, due_records) == [Status.PENDING.value] * 3

    def test_force_runs_outside_production_and_honours_limit(
        self, service, admin, due_records, dispatcher_factory, adapters, capsys
    ):
        with patch.object(settings, "ENVIRONMENT", "development"), patch(
            "app.cli.NotificationDispatcher", dispatcher_factory
        ):
            exit_code = cli.main(["process-due", "--force", "--limit", "2"])

        assert exit_code == 0
        assert len(adapters.sent) == 2
        assert sorted(statuses(service, admin, due_records)) == [
            Status.PENDING.value,
            Status.SENT.value,
            Status.SENT.value,
        ]
        assert '"fired": 2' in capsys.readouterr().out

    def test_runs_in_production_without_force(
        self, service, admin, due_records, dispatcher_factory, adapters
    ):
        with patch.object(settings, "ENVIRONMENT", "production"), patch(
            "app.cli.NotificationDispatcher", dispatcher_factory
        ):
            exit_code = cli.main(["process-due"])

        assert exit_code == 0
        assert len(dispatcher_factory.built) == 1
        assert statuses(service, admin, due_records) == [Status.SENT.value] * 3

    def test_delivery_failures_give_exit_code_2(
        self, due_records, dispatcher_factory, adapters
    ):
        adapters.modes["mail"] = "raise"

        with patch.object(settings, "ENVIRONMENT", "production"), patch(
            "app.cli.NotificationDispatcher", dispatcher_factory
        ):
            exit_code = cli.main(["process-due"])

        assert exit_code == 2

    def test_unknown_command_is_rejected(self):
        with pytest.raises(SystemExit):
            cli.main(["send-everything"])


class TestStatsCommand:
    def test_prints_counts(self, session_factory, due_records, capsys):
        with patch("app.cli.SessionLocal", session_factory):
            exit_code = cli.main(["stats"])

        assert exit_code == 0
        out = capsys.readouterr().out
        assert '"total": 3' in out
        assert '"pending": 3' in out


class TestDispatcherTask:
    @pytest.mark.asyncio
    async def test_returns_report_counts(self):
        dispatcher = Mock()

        async def process_due():
            return DispatchReport(
                selected=2,
                claimed=2,
                fired=2,
                deliveries_succeeded=3,
                deliveries_failed=1,
                failures=[DeliveryFailure(notification_id="n-1", user_id="41", channel="sms", error="down")],
            )

        dispatcher.process_due = process_due

        with patch(
            "app.tasks.cron.scheduled_notification_dispatcher.NotificationDispatcher",
            return_value=dispatcher,
        ):
            result = await _async_dispatch_scheduled_notifications("test_request_id")

        assert result["success"] is True
        assert result["request_id"] == "test_request_id"
        assert result["fired"] == 2
        assert result["deliveries_failed"] == 1
        assert result["failure_count"] == 1
        assert "failures" not in result

    @pytest.mark.asyncio
    async def test_reports_failure_instead_of_raising(self):
        dispatcher = Mock()

        async def process_due():
            raise RuntimeError("database unavailable")

        dispatcher.process_due = process_due

        with patch(
            "app.tasks.cron.scheduled_notification_dispatcher.NotificationDispatcher",
            return_value=dispatcher,
        ):
            result = await _async_dispatch_scheduled_notifications("test_request_id")

        assert result == {
            "success": False,
            "error": "database unavailable",
            "request_id": "test_request_id",
        }
