import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from zoneinfo import ZoneInfo

from app.config.settings import settings
from app.schemas.schedule_schemas import parse_schedule
from app.services.scheduling.recurrence import (
    EXHAUSTED,
    is_exhausted,
    next_occurrence,
    upcoming_occurrences,
)
from app.utils.errors import ScheduleValidationError

from conftest import utc

BANGKOK_TZ = ZoneInfo("Asia/Bangkok")
NEW_YORK_TZ = ZoneInfo("America/New_York")


def daily(anchor: str, **extra):
    return parse_schedule({"type": "daily", "anchor_datetime": anchor, **extra})


class TestOnceSchedule:
    """One-time schedules fire exactly once, at the anchor."""

    def test_returns_anchor_before_it_fires(self):
        schedule = parse_schedule({"type": "once", "anchor_datetime": "2025-01-10T09:00:00Z"})

        assert next_occurrence(schedule, 0, utc(2025, 1, 1)) == utc(2025, 1, 10, 9, 0)

    def test_exhausted_once_fired(self):
        schedule = parse_schedule({"type": "once", "anchor_datetime": "2025-01-10T09:00:00Z"})

        assert next_occurrence(schedule, 1, utc(2025, 1, 1)) is EXHAUSTED

    def test_exhausted_when_anchor_not_after_reference(self):
        schedule = parse_schedule({"type": "once", "anchor_datetime": "2025-01-10T09:00:00Z"})

        assert next_occurrence(schedule, 0, utc(2025, 1, 10, 9, 0)) is EXHAUSTED
        assert next_occurrence(schedule, 0, utc(2025, 2, 1)) is EXHAUSTED

    def test_naive_anchor_is_wall_clock_in_timezone(self):
        schedule = parse_schedule(
            {"type": "once", "anchor_datetime": "2025-01-10T09:00:00", "timezone": "Asia/Bangkok"}
        )

        assert next_occurrence(schedule, 0, utc(2025, 1, 1)) == utc(2025, 1, 10, 2, 0)


class TestRecurringSchedules:
    """Fixed-period schedules step from the anchor until strictly after the reference."""

    def test_daily_next_slot_after_reference(self):
        schedule = daily("2025-01-01T08:00:00Z")

        assert next_occurrence(schedule, 4, utc(2025, 1, 5, 10, 0)) == utc(2025, 1, 6, 8, 0)

    def test_future_anchor_is_first_occurrence(self):
        schedule = daily("2025-03-01T08:00:00Z")

        assert next_occurrence(schedule, 0, utc(2025, 1, 1)) == utc(2025, 3, 1, 8, 0)

    def test_reference_on_a_slot_moves_to_the_next(self):
        schedule = daily("2025-01-01T08:00:00Z")

        assert next_occurrence(schedule, 0, utc(2025, 1, 3, 8, 0)) == utc(2025, 1, 4, 8, 0)

    def test_weekly(self):
        schedule = parse_schedule({"type": "weekly", "anchor_datetime": "2025-01-06T07:30:00Z"})

        assert next_occurrence(schedule, 0, utc(2025, 1, 7)) == utc(2025, 1, 13, 7, 30)

    def test_custom_every_two_weeks_exhausts_after_two(self):
        schedule = parse_schedule(
            {
                "type": "custom",
                "interval": 2,
                "unit": "week",
                "anchor_datetime": "2025-01-01T00:00:00Z",
                "end_condition": {"kind": "after_occurrences", "occurrences": 2},
            }
        )

        first = next_occurrence(schedule, 0, utc(2024, 12, 31))
        second = next_occurrence(schedule, 1, first)
        third = next_occurrence(schedule, 2, second)

        assert first == utc(2025, 1, 1)
        assert second == utc(2025, 1, 15)
        assert third is EXHAUSTED

    def test_custom_minutes_step_in_absolute_time(self):
        schedule = parse_schedule(
            {
                "type": "custom",
                "interval": 15,
                "unit": "minute",
                "anchor_datetime": "2025-01-01T00:00:00Z",
            }
        )

        assert next_occurrence(schedule, 3, utc(2025, 1, 1, 0, 31)) == utc(2025, 1, 1, 0, 45)

    def test_custom_hours_far_from_anchor(self):
        schedule = parse_schedule(
            {
                "type": "custom",
                "interval": 6,
                "unit": "hour",
                "anchor_datetime": "2020-01-01T03:00:00Z",
            }
        )

        assert next_occurrence(schedule, 0, utc(2025, 6, 1, 4, 0)) == utc(2025, 6, 1, 9, 0)


class TestMonthClamp:
    """Monthly steps clamp to the last day of short months without drifting."""

    def test_anchor_on_31st(self):
        schedule = parse_schedule({"type": "monthly", "anchor_datetime": "2025-01-31T09:00:00Z"})

        occurrences = upcoming_occurrences(schedule, 0, utc(2025, 1, 1), limit=4)

        assert occurrences == [
            utc(2025, 1, 31, 9, 0),
            utc(2025, 2, 28, 9, 0),
            utc(2025, 3, 31, 9, 0),
            utc(2025, 4, 30, 9, 0),
        ]

    def test_leap_year_february(self):
        schedule = parse_schedule({"type": "monthly", "anchor_datetime": "2024-01-31T09:00:00Z"})

        assert next_occurrence(schedule, 1, utc(2024, 1, 31, 9, 0)) == utc(2024, 2, 29, 9, 0)

    def test_custom_three_months(self):
        schedule = parse_schedule(
            {
                "type": "custom",
                "interval": 3,
                "unit": "month",
                "anchor_datetime": "2024-11-30T00:00:00Z",
            }
        )

        assert next_occurrence(schedule, 1, utc(2024, 12, 1)) == utc(2025, 2, 28)
        assert next_occurrence(schedule, 2, utc(2025, 2, 28)) == utc(2025, 5, 30)


class TestTimezones:
    """Calendar units keep local wall-clock time across DST changes."""

    def test_daily_keeps_local_time_across_dst_start(self):
        schedule = daily("2025-03-08T08:00:00", timezone="America/New_York")

        first = next_occurrence(schedule, 0, utc(2025, 3, 1))
        second = next_occurrence(schedule, 1, first)

        assert first == utc(2025, 3, 8, 13, 0)
        assert second == utc(2025, 3, 9, 12, 0)
        assert second.astimezone(NEW_YORK_TZ).hour == 8

    def test_bangkok_daily(self):
        schedule = daily("2025-01-01T08:00:00", timezone="Asia/Bangkok")

        result = next_occurrence(schedule, 0, utc(2025, 1, 1, 2, 0))

        assert result.astimezone(BANGKOK_TZ) == datetime(2025, 1, 2, 8, 0, tzinfo=BANGKOK_TZ)

    def test_results_are_utc(self):
        schedule = daily("2025-01-01T08:00:00", timezone="Asia/Bangkok")

        result = next_occurrence(schedule, 0, utc(2024, 12, 1))

        assert result.utcoffset() == timedelta(0)

    def test_naive_reference_is_utc(self):
        schedule = daily("2025-01-01T08:00:00Z")

        assert next_occurrence(schedule, 0, datetime(2025, 1, 2, 9, 0)) == utc(2025, 1, 3, 8, 0)


class TestEndConditions:
    def test_on_date_inclusive(self):
        schedule = daily(
            "2025-01-01T08:00:00Z",
            end_condition={"kind": "on_date", "end_date": "2025-01-03T08:00:00Z"},
        )

        assert next_occurrence(schedule, 1, utc(2025, 1, 2, 8, 0)) == utc(2025, 1, 3, 8, 0)
        assert next_occurrence(schedule, 2, utc(2025, 1, 3, 8, 0)) is EXHAUSTED

    def test_after_occurrences_exhausts_on_the_third_fire(self):
        schedule = daily(
            "2025-01-01T08:00:00Z",
            end_condition={"kind": "after_occurrences", "occurrences": 3},
        )

        reference = utc(2024, 12, 31)
        results = []
        for count in range(4):
            result = next_occurrence(schedule, count, reference)
            results.append(result)
            if not is_exhausted(result):
                reference = result

        assert results[:3] == [
            utc(2025, 1, 1, 8, 0),
            utc(2025, 1, 2, 8, 0),
            utc(2025, 1, 3, 8, 0),
        ]
        assert results[3] is EXHAUSTED

    def test_upcoming_stops_at_exhaustion(self):
        schedule = daily(
            "2025-01-01T08:00:00Z",
            end_condition={"kind": "after_occurrences", "occurrences": 2},
        )

        assert len(upcoming_occurrences(schedule, 0, utc(2024, 12, 31), limit=10)) == 2


class TestProperties:
    """Monotonicity, idempotence and strictly-after, checked over a grid of references."""

    SCHEDULES = [
        {"type": "daily", "anchor_datetime": "2025-01-01T08:00:00", "timezone": "America/New_York"},
        {"type": "weekly", "anchor_datetime": "2025-01-06T07:30:00Z"},
        {"type": "monthly", "anchor_datetime": "2025-01-31T09:00:00Z"},
        {"type": "custom", "interval": 90, "unit": "minute", "anchor_datetime": "2025-01-01T00:00:00Z"},
        {"type": "custom", "interval": 5, "unit": "day", "anchor_datetime": "2025-02-27T23:00:00", "timezone": "Europe/London"},
    ]

    @staticmethod
    def references():
        start = datetime(2024, 12, 20, tzinfo=timezone.utc)
        return [start + timedelta(hours=7 * i) for i in range(400)]

    @pytest.mark.parametrize("raw", SCHEDULES)
    def test_never_at_or_before_reference(self, raw):
        schedule = parse_schedule(raw)

        for reference in self.references():
            assert next_occurrence(schedule, 0, reference) > reference

    @pytest.mark.parametrize("raw", SCHEDULES)
    def test_monotonic(self, raw):
        schedule = parse_schedule(raw)
        previous = None

        for reference in self.references():
            result = next_occurrence(schedule, 0, reference)
            if previous is not None:
                assert previous <= result
            previous = result

    @pytest.mark.parametrize("raw", SCHEDULES)
    def test_idempotent(self, raw):
        schedule = parse_schedule(raw)
        reference = utc(2025, 3, 30, 1, 30)

        assert next_occurrence(schedule, 2, reference) == next_occurrence(schedule, 2, reference)


class TestScheduleValidation:
    def test_custom_requires_interval(self):
        with pytest.raises(ScheduleValidationError) as exc_info:
            parse_schedule({"type": "custom", "unit": "day", "anchor_datetime": "2025-01-01T00:00:00Z"})

        assert any("interval" in error["field"] for error in exc_info.value.errors)

    def test_custom_interval_must_be_positive(self):
        with pytest.raises(ScheduleValidationError):
            parse_schedule(
                {"type": "custom", "interval": 0, "unit": "day", "anchor_datetime": "2025-01-01T00:00:00Z"}
            )

    def test_unknown_unit(self):
        with pytest.raises(ScheduleValidationError):
            parse_schedule(
                {"type": "custom", "interval": 1, "unit": "year", "anchor_datetime": "2025-01-01T00:00:00Z"}
            )

    def test_end_date_before_anchor(self):
        with pytest.raises(ScheduleValidationError):
            daily(
                "2025-01-10T08:00:00Z",
                end_condition={"kind": "on_date", "end_date": "2025-01-01T00:00:00Z"},
            )

    def test_unknown_timezone(self):
        with pytest.raises(ScheduleValidationError):
            daily("2025-01-10T08:00:00", timezone="Mars/Olympus_Mons")

    def test_timezone_defaults_to_configured_zone(self):
        with patch.object(settings, "DEFAULT_TIMEZONE", "Asia/Bangkok"):
            schedule = daily("2025-01-10T08:00:00")

        assert schedule.timezone == "Asia/Bangkok"
        assert schedule.anchor_utc == utc(2025, 1, 10, 1, 0)

    def test_explicit_timezone_wins_over_default(self):
        with patch.object(settings, "DEFAULT_TIMEZONE", "Asia/Bangkok"):
            schedule = daily("2025-01-10T08:00:00", timezone="UTC")

        assert schedule.anchor_utc == utc(2025, 1, 10, 8, 0)

    def test_camel_case_keys_accepted(self):
        schedule = parse_schedule(
            {
                "type": "daily",
                "anchorDatetime": "2025-01-01T08:00:00Z",
                "endCondition": {"kind": "after_occurrences", "occurrences": 1},
            }
        )

        assert schedule.end_condition.occurrences == 1
