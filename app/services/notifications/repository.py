from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.db.models import (
    ScheduledNotification,
    ScheduledNotificationDelivery,
    ScheduledNotificationStatus as Status,
)
from app.services.scheduling.state_machine import TERMINAL_STATUSES, FireOutcome
from app.utils.datetime_utils import optional_to_naive_utc, to_naive_utc


class ScheduledNotificationRepository:
    """
    Conditional state transitions for scheduled notification records.

    Every write is a single UPDATE guarded by the status the transition starts
    from, plus the claim token where one is held. Each method returns whether a
    row matched; False means another caller moved the record first. Callers
    own the transaction.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def _transition(self, *criteria, **values) -> bool:
        result = self.db.execute(
            update(ScheduledNotification)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get(self, record_id: str, include_deleted: bool = False) -> Optional[ScheduledNotification]:
        stmt = select(ScheduledNotification).where(ScheduledNotification.id == record_id)
        if not include_deleted:
            stmt = stmt.where(ScheduledNotification.deleted_at.is_(None))
        return self.db.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def select_due_ids(self, now: datetime, limit: int) -> List[str]:
        stmt = (
            select(ScheduledNotification.id)
            .where(
                ScheduledNotification.status == Status.PENDING,
                ScheduledNotification.next_occurrence_at <= to_naive_utc(now),
                ScheduledNotification.deleted_at.is_(None),
            )
            .order_by(ScheduledNotification.next_occurrence_at.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def claim(self, record_id: str, claim_token: str, now: datetime) -> bool:
        """pending and due -> processing"""
        naive_now = to_naive_utc(now)
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status == Status.PENDING,
            ScheduledNotification.next_occurrence_at <= naive_now,
            ScheduledNotification.deleted_at.is_(None),
            status=Status.PROCESSING,
            claim_token=claim_token,
            claimed_at=naive_now,
        )

    def release(self, record_id: str, claim_token: str, error: Optional[str]) -> bool:
        """processing -> pending without firing; the same occurrence stays due"""
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status == Status.PROCESSING,
            ScheduledNotification.claim_token == claim_token,
            status=Status.PENDING,
            claim_token=None,
            claimed_at=None,
            last_error=error,
        )

    def complete(self, record_id: str, claim_token: str, outcome: FireOutcome) -> bool:
        """processing -> pending (re-armed), sent or exhausted"""
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status == Status.PROCESSING,
            ScheduledNotification.claim_token == claim_token,
            status=outcome.status,
            occurrence_count=outcome.occurrence_count,
            next_occurrence_at=optional_to_naive_utc(outcome.next_occurrence_at),
            last_fired_at=to_naive_utc(outcome.last_fired_at),
            sent_at=optional_to_naive_utc(outcome.sent_at),
            claim_token=None,
            claimed_at=None,
            last_error=None,
        )

    def refresh_claim(self, record_id: str, claim_token: str, claimed_at: datetime) -> bool:
        """processing -> processing with a later claimed_at, while the claim is still held"""
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status == Status.PROCESSING,
            ScheduledNotification.claim_token == claim_token,
            claimed_at=to_naive_utc(claimed_at),
        )

    def cancel(self, record_id: str, now: datetime) -> bool:
        """pending -> cancelled"""
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status == Status.PENDING,
            ScheduledNotification.deleted_at.is_(None),
            status=Status.CANCELLED,
            next_occurrence_at=None,
            cancelled_at=to_naive_utc(now),
        )

    def update_pending(self, record_id: str, values: Dict[str, Any]) -> bool:
        """pending -> pending with edited fields"""
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status == Status.PENDING,
            ScheduledNotification.deleted_at.is_(None),
            **values,
        )

    def soft_delete(self, record_id: str, now: datetime) -> bool:
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status.in_(list(TERMINAL_STATUSES)),
            ScheduledNotification.deleted_at.is_(None),
            deleted_at=to_naive_utc(now),
        )

    def find_stale_claim_ids(self, claimed_before: datetime) -> List[str]:
        stmt = select(ScheduledNotification.id).where(
            ScheduledNotification.status == Status.PROCESSING,
            ScheduledNotification.claimed_at < to_naive_utc(claimed_before),
        )
        return list(self.db.scalars(stmt).all())

    def recover_stale_claim(self, record_id: str, claimed_before: datetime) -> bool:
        """processing (abandoned) -> pending; the in-flight occurrence will replay"""
        return self._transition(
            ScheduledNotification.id == record_id,
            ScheduledNotification.status == Status.PROCESSING,
            ScheduledNotification.claimed_at < to_naive_utc(claimed_before),
            status=Status.PENDING,
            claim_token=None,
            claimed_at=None,
            last_error="Claim expired before the occurrence was recorded",
        )

    def add_deliveries(self, deliveries: Iterable[ScheduledNotificationDelivery]) -> None:
        self.db.add_all(list(deliveries))
