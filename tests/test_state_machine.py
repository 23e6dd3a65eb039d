import pytest

from app.db.models import ScheduledNotificationStatus as Status
from app.schemas.schedule_schemas import parse_schedule
from app.services.scheduling.state_machine import (
    TERMINAL_STATUSES,
    advance_after_fire,
    can_transition,
    ensure_transition,
    is_terminal,
)
from app.utils.errors import IllegalTransitionError

from conftest import utc


class TestTransitionTable:
    """Only the documented moves are legal."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (Status.PENDING, Status.PROCESSING),
            (Status.PENDING, Status.CANCELLED),
            (Status.PENDING, Status.PENDING),
            (Status.PROCESSING, Status.PENDING),
            (Status.PROCESSING, Status.SENT),
            (Status.PROCESSING, Status.EXHAUSTED),
        ],
    )
    def test_legal(self, current, target):
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (Status.PENDING, Status.SENT),
            (Status.PROCESSING, Status.CANCELLED),
            (Status.SENT, Status.PENDING),
            (Status.CANCELLED, Status.PENDING),
            (Status.EXHAUSTED, Status.PROCESSING),
        ],
    )
    def test_illegal(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(IllegalTransitionError) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.current_status == current.value

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert is_terminal(status)
            assert not any(can_transition(status, target) for target in Status)


class TestAdvanceAfterFire:
    def test_once_becomes_sent(self):
        schedule = parse_schedule({"type": "once", "anchor_datetime": "2025-01-10T09:00:00Z"})

        outcome = advance_after_fire(
            schedule, 0, utc(2025, 1, 10, 9, 0), utc(2025, 1, 10, 9, 0, 5)
        )

        assert outcome.status == Status.SENT
        assert outcome.occurrence_count == 1
        assert outcome.next_occurrence_at is None
        assert outcome.sent_at == utc(2025, 1, 10, 9, 0, 5)

    def test_recurring_rearms(self):
        schedule = parse_schedule({"type": "daily", "anchor_datetime": "2025-01-01T08:00:00Z"})

        outcome = advance_after_fire(schedule, 0, utc(2025, 1, 1, 8, 0), utc(2025, 1, 1, 8, 0, 30))

        assert outcome.status == Status.PENDING
        assert outcome.occurrence_count == 1
        assert outcome.next_occurrence_at == utc(2025, 1, 2, 8, 0)

    def test_missed_slots_coalesce(self):
        schedule = parse_schedule({"type": "daily", "anchor_datetime": "2025-01-01T08:00:00Z"})

        # Worker was down for four days; only one firing happens
        outcome = advance_after_fire(schedule, 0, utc(2025, 1, 1, 8, 0), utc(2025, 1, 5, 10, 0))

        assert outcome.occurrence_count == 1
        assert outcome.next_occurrence_at == utc(2025, 1, 6, 8, 0)

    def test_recurring_runs_out(self):
        schedule = parse_schedule(
            {
                "type": "weekly",
                "anchor_datetime": "2025-01-01T08:00:00Z",
                "end_condition": {"kind": "after_occurrences", "occurrences": 2},
            }
        )

        outcome = advance_after_fire(schedule, 1, utc(2025, 1, 8, 8, 0), utc(2025, 1, 8, 8, 0))

        assert outcome.status == Status.EXHAUSTED
        assert outcome.occurrence_count == 2
        assert outcome.next_occurrence_at is None

    def test_sent_at_kept_when_nothing_delivered(self):
        schedule = parse_schedule({"type": "daily", "anchor_datetime": "2025-01-01T08:00:00Z"})
        previous = utc(2025, 1, 1, 8, 0, 1)

        outcome = advance_after_fire(
            schedule,
            1,
            utc(2025, 1, 2, 8, 0),
            utc(2025, 1, 2, 8, 0, 1),
            delivered=False,
            previous_sent_at=previous,
        )

        assert outcome.sent_at == previous
        assert outcome.last_fired_at == utc(2025, 1, 2, 8, 0, 1)
