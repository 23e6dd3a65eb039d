from datetime import datetime
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict

from app.db.models import ScheduledNotificationStatus as Status
from app.schemas.schedule_schemas import OnceSchedule, ScheduleDescriptor
from app.services.scheduling.recurrence import is_exhausted, next_occurrence
from app.utils.datetime_utils import to_utc
from app.utils.errors import IllegalTransitionError

# Legal moves; anything not listed raises IllegalTransitionError
TRANSITIONS: Dict[Status, FrozenSet[Status]] = {
    Status.PENDING: frozenset({Status.PROCESSING, Status.CANCELLED, Status.PENDING}),
    Status.PROCESSING: frozenset({Status.PENDING, Status.SENT, Status.EXHAUSTED}),
    Status.SENT: frozenset(),
    Status.EXHAUSTED: frozenset(),
    Status.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[Status] = frozenset(
    {Status.SENT, Status.EXHAUSTED, Status.CANCELLED}
)


def can_transition(current: Status, target: Status) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: Status, target: Status) -> None:
    if not can_transition(current, target):
        raise IllegalTransitionError(
            f"Cannot move scheduled notification from {current.value} to {target.value}",
            current_status=current.value,
        )


def is_terminal(status: Status) -> bool:
    return status in TERMINAL_STATUSES


class FireOutcome(BaseModel):
    """Field values a record takes after one occurrence fires."""

    model_config = ConfigDict(frozen=True)

    status: Status
    occurrence_count: int
    next_occurrence_at: Optional[datetime]
    last_fired_at: datetime
    sent_at: Optional[datetime]


def advance_after_fire(
    schedule: ScheduleDescriptor,
    occurrence_count: int,
    occurrence_at: datetime,
    fired_at: datetime,
    delivered: bool = True,
    previous_sent_at: Optional[datetime] = None,
) -> FireOutcome:
    """
    Compute the record's next state once an in-flight occurrence has fired.

    The occurrence counts as fired whatever the individual deliveries did.
    The next occurrence is searched after the later of the scheduled instant
    and the actual firing time, so slots missed while the worker was down
    collapse into this single firing.

    Args:
        schedule: The record's schedule
        occurrence_count: Occurrences fired before this one
        occurrence_at: The scheduled instant that just fired
        fired_at: When the worker finished firing it
        delivered: Whether at least one delivery succeeded
        previous_sent_at: The record's existing sent_at, kept when nothing was delivered

    Returns:
        FireOutcome with status pending (re-armed), sent or exhausted
    """
    occurrence_at = to_utc(occurrence_at)
    fired_at = to_utc(fired_at)
    new_count = occurrence_count + 1
    reference = max(occurrence_at, fired_at)

    upcoming = next_occurrence(schedule, new_count, reference)
    sent_at = fired_at if delivered else previous_sent_at

    if is_exhausted(upcoming):
        target = Status.SENT if isinstance(schedule, OnceSchedule) else Status.EXHAUSTED
        ensure_transition(Status.PROCESSING, target)
        return FireOutcome(
            status=target,
            occurrence_count=new_count,
            next_occurrence_at=None,
            last_fired_at=fired_at,
            sent_at=sent_at,
        )

    ensure_transition(Status.PROCESSING, Status.PENDING)
    return FireOutcome(
        status=Status.PENDING,
        occurrence_count=new_count,
        next_occurrence_at=upcoming,  # type: ignore[arg-type]
        last_fired_at=fired_at,
        sent_at=sent_at,
    )
