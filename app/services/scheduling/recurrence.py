from datetime import datetime, timedelta
from typing import Callable, List, Tuple, Union

from dateutil.relativedelta import relativedelta

from app.schemas.schedule_schemas import (
    CustomSchedule,
    DailySchedule,
    EndsAfterOccurrences,
    IntervalUnit,
    MonthlySchedule,
    OnceSchedule,
    ScheduleDescriptor,
    WeeklySchedule,
)
from app.utils.datetime_utils import to_utc


class _Exhausted:
    """Marker returned when a schedule has no further occurrences."""

    def __repr__(self) -> str:
        return "EXHAUSTED"

    def __bool__(self) -> bool:
        return False


EXHAUSTED = _Exhausted()

Occurrence = Union[datetime, _Exhausted]

_FIXED_UNITS = {
    IntervalUnit.MINUTE: timedelta(minutes=1),
    IntervalUnit.HOUR: timedelta(hours=1),
}

_WALL_CLOCK_UNITS = {
    IntervalUnit.DAY: timedelta(days=1),
    IntervalUnit.WEEK: timedelta(weeks=1),
}


def is_exhausted(value: Occurrence) -> bool:
    return value is EXHAUSTED


def _period(schedule: ScheduleDescriptor) -> Tuple[int, IntervalUnit]:
    if isinstance(schedule, DailySchedule):
        return 1, IntervalUnit.DAY
    if isinstance(schedule, WeeklySchedule):
        return 1, IntervalUnit.WEEK
    if isinstance(schedule, MonthlySchedule):
        return 1, IntervalUnit.MONTH
    if isinstance(schedule, CustomSchedule):
        return schedule.interval, schedule.unit
    raise TypeError(f"Schedule type has no period: {type(schedule).__name__}")


def _smallest_after(
    candidate_at: Callable[[int], datetime], estimate: int, reference: datetime
) -> datetime:
    """
    Find the smallest k >= 0 with candidate_at(k) > reference.

    `estimate` only needs to be close; the search walks back while the
    previous candidate is still after `reference`, then forward until one is.
    """
    k = max(0, estimate)
    while k > 0 and candidate_at(k - 1) > reference:
        k -= 1
    while candidate_at(k) <= reference:
        k += 1
    return candidate_at(k)


def _first_after(schedule: ScheduleDescriptor, reference: datetime) -> datetime:
    interval, unit = _period(schedule)
    zone = schedule.zone

    if unit in _FIXED_UNITS:
        anchor = schedule.anchor_utc
        step = _FIXED_UNITS[unit] * interval
        estimate = (reference - anchor) // step + 1 if reference >= anchor else 0
        return _smallest_after(lambda k: anchor + k * step, estimate, reference)

    # Calendar units keep the anchor's wall-clock time across DST changes
    wall_anchor = schedule.local_anchor.replace(tzinfo=None)
    wall_reference = reference.astimezone(zone).replace(tzinfo=None)

    if unit in _WALL_CLOCK_UNITS:
        step = _WALL_CLOCK_UNITS[unit] * interval

        def candidate_at(k: int) -> datetime:
            return to_utc((wall_anchor + k * step).replace(tzinfo=zone))

        estimate = (
            (wall_reference - wall_anchor) // step
            if wall_reference >= wall_anchor
            else 0
        )
        return _smallest_after(candidate_at, estimate, reference)

    # Months: each occurrence is anchor + k months, clamped to the month's last day
    def month_candidate_at(k: int) -> datetime:
        wall = wall_anchor + relativedelta(months=k * interval)
        return to_utc(wall.replace(tzinfo=zone))

    month_diff = (wall_reference.year - wall_anchor.year) * 12 + (
        wall_reference.month - wall_anchor.month
    )
    return _smallest_after(month_candidate_at, month_diff // interval, reference)


def next_occurrence(
    schedule: ScheduleDescriptor, occurrence_count: int, reference: datetime
) -> Occurrence:
    """
    Compute the next instant a schedule fires strictly after `reference`.

    Args:
        schedule: The schedule descriptor
        occurrence_count: How many occurrences have already fired
        reference: Instant to search after; naive values are taken as UTC

    Returns:
        An aware UTC datetime, or EXHAUSTED when nothing is left to fire
    """
    reference = to_utc(reference)

    if isinstance(schedule, OnceSchedule):
        anchor = schedule.anchor_utc
        if occurrence_count == 0 and anchor > reference:
            return anchor
        return EXHAUSTED

    end_condition = schedule.end_condition
    if (
        isinstance(end_condition, EndsAfterOccurrences)
        and occurrence_count >= end_condition.occurrences
    ):
        return EXHAUSTED

    candidate = _first_after(schedule, reference)

    end_date = schedule.end_date_utc
    if end_date is not None and candidate > end_date:
        return EXHAUSTED

    return candidate


def upcoming_occurrences(
    schedule: ScheduleDescriptor,
    occurrence_count: int,
    reference: datetime,
    limit: int = 5,
) -> List[datetime]:
    """Preview up to `limit` future occurrences, assuming each one fires on time."""
    occurrences: List[datetime] = []
    count = occurrence_count
    current = reference

    while len(occurrences) < limit:
        nxt = next_occurrence(schedule, count, current)
        if is_exhausted(nxt):
            break
        occurrences.append(nxt)  # type: ignore[arg-type]
        count += 1
        current = nxt

    return occurrences
