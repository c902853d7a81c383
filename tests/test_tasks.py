"""Tests for the periodic Celery tasks."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from expert_booking.services.calendar_overlay import SyncResult
from expert_booking.services.notification_scheduler import DispatchResult
from expert_booking.worker.tasks import (
    complete_elapsed_appointments,
    dispatch_notifications,
    expire_reservations,
    refresh_all_calendar_overlays,
    refresh_calendar_overlay,
)

TASKS = "expert_booking.worker.tasks"


@asynccontextmanager
async def fake_factory():
    yield MagicMock()


@asynccontextmanager
async def fake_session_context(factory=None):
    yield MagicMock()


@pytest.fixture(autouse=True)
def no_database():
    with patch(f"{TASKS}.worker_session_factory", fake_factory), patch(
        f"{TASKS}.get_session_context", fake_session_context
    ):
        yield


class TestTaskNames:
    """Beat refers to tasks by name."""

    def test_names(self):
        assert expire_reservations.name == f"{TASKS}.expire_reservations"
        assert complete_elapsed_appointments.name == f"{TASKS}.complete_elapsed_appointments"
        assert dispatch_notifications.name == f"{TASKS}.dispatch_notifications"
        assert refresh_calendar_overlay.name == f"{TASKS}.refresh_calendar_overlay"
        assert refresh_all_calendar_overlays.name == f"{TASKS}.refresh_all_calendar_overlays"


class TestLedgerTasks:
    @patch(f"{TASKS}.BookingLedger")
    def test_expire_reservations(self, mock_ledger_class):
        """Released holds are reported by id."""
        mock_ledger_class.return_value.release_expired = AsyncMock(
            return_value=[MagicMock(id="a1"), MagicMock(id="a2")]
        )

        result = expire_reservations()

        assert result == {"released": 2, "appointment_ids": ["a1", "a2"]}

    @patch(f"{TASKS}.BookingLedger")
    def test_expire_reservations_failure_is_raised(self, mock_ledger_class):
        """Unexpected errors propagate (Celery retries them when run by a worker)."""
        mock_ledger_class.return_value.release_expired = AsyncMock(
            side_effect=RuntimeError("database down")
        )

        with pytest.raises(RuntimeError, match="database down"):
            expire_reservations()

    @patch(f"{TASKS}.BookingLedger")
    def test_complete_elapsed(self, mock_ledger_class):
        mock_ledger_class.return_value.complete_elapsed = AsyncMock(return_value=["a1"])

        assert complete_elapsed_appointments() == {"completed": 1, "appointment_ids": ["a1"]}


class TestNotificationTask:
    @patch(f"{TASKS}.NotificationScheduler")
    def test_dispatch(self, mock_scheduler_class):
        mock_scheduler_class.return_value.dispatch_due = AsyncMock(
            return_value=DispatchResult(sent=3, retried=1, failed=0)
        )

        assert dispatch_notifications() == {"sent": 3, "retried": 1, "failed": 0}


class TestCalendarTasks:
    @patch(f"{TASKS}.CalendarOverlay")
    def test_refresh_one(self, mock_overlay_class):
        mock_overlay_class.return_value.refresh = AsyncMock(
            return_value=SyncResult(
                success=True, integration_id="i1", expert_id="e1", busy_intervals=4
            )
        )

        result = refresh_calendar_overlay("e1")

        assert result["success"] is True
        assert result["busy_intervals"] == 4
        mock_overlay_class.return_value.refresh.assert_awaited_once_with("e1")

    @patch(f"{TASKS}.refresh_calendar_overlay")
    @patch(f"{TASKS}.CalendarIntegrationRepository")
    def test_fan_out(self, mock_repo_class, mock_refresh_task):
        mock_repo_class.return_value.list_active = AsyncMock(
            return_value=[MagicMock(expert_id="e1"), MagicMock(expert_id="e2")]
        )

        result = refresh_all_calendar_overlays()

        assert result == {"queued": 2, "errors": 0}
        assert [c.args for c in mock_refresh_task.delay.call_args_list] == [("e1",), ("e2",)]

    @patch(f"{TASKS}.refresh_calendar_overlay")
    @patch(f"{TASKS}.CalendarIntegrationRepository")
    def test_fan_out_counts_queue_errors(self, mock_repo_class, mock_refresh_task):
        mock_repo_class.return_value.list_active = AsyncMock(
            return_value=[MagicMock(expert_id="e1"), MagicMock(expert_id="e2")]
        )
        mock_refresh_task.delay.side_effect = [None, ConnectionError("broker unreachable")]

        assert refresh_all_calendar_overlays() == {"queued": 1, "errors": 1}
