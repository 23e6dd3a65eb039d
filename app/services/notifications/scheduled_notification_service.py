import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from fastapi import Depends
from pydantic import BaseModel, ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.models import (
    DeliveryStatus,
    ScheduledNotification,
    ScheduledNotificationDelivery,
    ScheduledNotificationStatus as Status,
)
from app.db.session import get_sync_session
from app.schemas.recipient_schemas import dump_recipients_json, parse_recipients_json
from app.schemas.schedule_schemas import (
    ScheduleDescriptor,
    dump_schedule_json,
    parse_schedule_json,
)
from app.schemas.scheduled_notification_schemas import (
    CreateScheduledNotificationRequest,
    ScheduledNotificationListQueryParams,
    ScheduledNotificationResponse,
    ScheduledNotificationStats,
    UpdateScheduledNotificationRequest,
)
from app.services.notifications.authorization import (
    AuthorizationGate,
    CallerContext,
    RoleBasedAuthorizationGate,
    ScheduledNotificationAction as Action,
)
from app.services.notifications.repository import ScheduledNotificationRepository
from app.services.scheduling.recurrence import (
    is_exhausted,
    next_occurrence,
    upcoming_occurrences,
)
from app.services.scheduling.state_machine import is_terminal
from app.utils.datetime_utils import optional_to_utc, to_naive_utc, utc_now
from app.utils.errors import (
    IllegalTransitionError,
    NotCancellableError,
    NotFoundError,
    ScheduleValidationError,
    format_validation_errors,
)
from app.utils.logging import get_logger

logger = get_logger()

RequestModel = TypeVar("RequestModel", bound=BaseModel)

UPCOMING_PREVIEW_SIZE = 5


def _validate_request(
    model: Type[RequestModel], data: Union[RequestModel, Dict[str, Any]]
) -> RequestModel:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ScheduleValidationError(
            "Invalid scheduled notification definition",
            errors=format_validation_errors(e.errors()),
        )


class ScheduledNotificationService:
    """Service provider for scheduled notification business logic and database operations"""

    def __init__(
        self,
        db_session: Session,
        gate: Optional[AuthorizationGate] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.gate = gate or RoleBasedAuthorizationGate()
        self.clock = clock
        self.repository = ScheduledNotificationRepository(db_session)

    # Core operations
    async def create(
        self,
        data: Union[CreateScheduledNotificationRequest, Dict[str, Any]],
        caller: CallerContext,
    ) -> ScheduledNotificationResponse:
        """Validate, compute the first occurrence and persist a pending record"""
        self.gate.authorize(caller, Action.CREATE)
        request = _validate_request(CreateScheduledNotificationRequest, data)

        first_occurrence = self._first_occurrence(request.schedule, 0)

        record = ScheduledNotification(
            name=request.name,
            notification_type=request.notification_type,
            channels=json.dumps([channel.value for channel in request.channels]),
            recipients=dump_recipients_json(request.recipients),
            payload=json.dumps(request.payload),
            schedule=dump_schedule_json(request.schedule),
            status=Status.PENDING,
            next_occurrence_at=first_occurrence,
            occurrence_count=0,
            created_by=caller.user_id,
            created_at=to_naive_utc(self.clock()),
        )

        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)

        logger.info(
            f"Scheduled notification {record.id} '{record.name}' created by {caller.user_id}, "
            f"first occurrence at {first_occurrence.isoformat()}Z"
        )
        return self._to_response(record)

    async def update(
        self,
        record_id: str,
        data: Union[UpdateScheduledNotificationRequest, Dict[str, Any]],
        caller: CallerContext,
    ) -> ScheduledNotificationResponse:
        """Edit a record while it is still pending. A new schedule re-runs the calculator."""
        record = await self._get_record_or_404(record_id)
        self.gate.authorize(caller, Action.UPDATE, record)
        request = _validate_request(UpdateScheduledNotificationRequest, data)

        if record.status != Status.PENDING:
            raise IllegalTransitionError(
                "Only pending scheduled notifications can be updated",
                current_status=record.status.value,
            )

        values: Dict[str, Any] = {}
        if request.name is not None:
            values["name"] = request.name
        if request.notification_type is not None:
            values["notification_type"] = request.notification_type
        if request.channels is not None:
            values["channels"] = json.dumps([c.value for c in request.channels])
        if request.recipients is not None:
            values["recipients"] = dump_recipients_json(request.recipients)
        if request.payload is not None:
            values["payload"] = json.dumps(request.payload)
        if request.schedule is not None:
            values["schedule"] = dump_schedule_json(request.schedule)
            values["next_occurrence_at"] = self._first_occurrence(
                request.schedule, record.occurrence_count
            )

        if values and not self.repository.update_pending(record_id, values):
            self.db.rollback()
            current = await self._get_record_or_404(record_id)
            raise IllegalTransitionError(
                "Only pending scheduled notifications can be updated",
                current_status=current.status.value,
            )

        self.db.commit()
        record = await self._get_record_or_404(record_id)

        logger.info(f"Scheduled notification {record_id} updated by {caller.user_id}")
        return self._to_response(record)

    async def cancel(
        self, record_id: str, caller: CallerContext
    ) -> ScheduledNotificationResponse:
        """pending -> cancelled, or NotCancellableError with the record left untouched"""
        record = await self._get_record_or_404(record_id)
        self.gate.authorize(caller, Action.CANCEL, record)

        # No status pre-check: the conditional update decides races with a claim
        if not self.repository.cancel(record_id, self.clock()):
            self.db.rollback()
            current = await self._get_record_or_404(record_id)
            logger.info(
                f"Cancel rejected for scheduled notification {record_id} in status {current.status.value}"
            )
            raise NotCancellableError(
                f"Scheduled notification is {current.status.value} and cannot be cancelled",
                current_status=current.status.value,
            )

        self.db.commit()
        record = await self._get_record_or_404(record_id)

        logger.info(f"Scheduled notification {record_id} cancelled by {caller.user_id}")
        return self._to_response(record)

    async def get(
        self, record_id: str, caller: CallerContext
    ) -> ScheduledNotificationResponse:
        record = await self._get_record_or_404(record_id)
        self.gate.authorize(caller, Action.VIEW, record)
        return self._to_response(record, include_upcoming=True)

    async def list(
        self, params: ScheduledNotificationListQueryParams, caller: CallerContext
    ) -> Tuple[List[ScheduledNotificationResponse], int]:
        """Filtered page of records, newest first. Non-admins only see their own."""
        self.gate.authorize(caller, Action.LIST)

        conditions = [ScheduledNotification.deleted_at.is_(None)]
        if not self.gate.sees_all_records(caller):
            conditions.append(ScheduledNotification.created_by == caller.user_id)
        elif params.created_by:
            conditions.append(ScheduledNotification.created_by == params.created_by)

        if params.status is not None:
            conditions.append(ScheduledNotification.status == params.status)
        if params.notification_type:
            conditions.append(
                ScheduledNotification.notification_type == params.notification_type
            )
        if params.start_date is not None:
            conditions.append(
                ScheduledNotification.next_occurrence_at >= to_naive_utc(params.start_date)
            )
        if params.end_date is not None:
            conditions.append(
                ScheduledNotification.next_occurrence_at <= to_naive_utc(params.end_date)
            )

        total = self.db.scalar(
            select(func.count(ScheduledNotification.id)).where(*conditions)
        )

        stmt = (
            select(ScheduledNotification)
            .where(*conditions)
            .order_by(
                ScheduledNotification.created_at.desc(),
                ScheduledNotification.id.desc(),
            )
            .offset((params.page - 1) * params.per_page)
            .limit(params.per_page)
        )
        records = self.db.scalars(stmt).all()

        return [self._to_response(record) for record in records], total or 0

    async def stats(self, caller: CallerContext) -> ScheduledNotificationStats:
        """Counts per status and delivery outcome totals"""
        self.gate.authorize(caller, Action.STATS)

        by_status = {status.value: 0 for status in Status}
        rows = self.db.execute(
            select(ScheduledNotification.status, func.count(ScheduledNotification.id))
            .where(ScheduledNotification.deleted_at.is_(None))
            .group_by(ScheduledNotification.status)
        ).all()
        for status, count in rows:
            by_status[status.value] = count

        deliveries = {status: 0 for status in DeliveryStatus}
        delivery_rows = self.db.execute(
            select(
                ScheduledNotificationDelivery.status,
                func.count(ScheduledNotificationDelivery.id),
            ).group_by(ScheduledNotificationDelivery.status)
        ).all()
        for status, count in delivery_rows:
            deliveries[status] = count

        return ScheduledNotificationStats(
            total=sum(by_status.values()),
            by_status=by_status,
            deliveries_succeeded=deliveries[DeliveryStatus.SUCCEEDED],
            deliveries_failed=deliveries[DeliveryStatus.FAILED]
            + deliveries[DeliveryStatus.TIMED_OUT],
            deliveries_timed_out=deliveries[DeliveryStatus.TIMED_OUT],
        )

    async def delete(self, record_id: str, caller: CallerContext) -> Dict[str, Any]:
        """Soft delete. Active records must be cancelled first."""
        record = await self._get_record_or_404(record_id)
        self.gate.authorize(caller, Action.DELETE, record)

        if not is_terminal(record.status) or not self.repository.soft_delete(
            record_id, self.clock()
        ):
            self.db.rollback()
            current = await self._get_record_or_404(record_id)
            raise IllegalTransitionError(
                "Only sent, exhausted or cancelled scheduled notifications can be deleted",
                current_status=current.status.value,
            )

        self.db.commit()
        logger.info(f"Scheduled notification {record_id} deleted by {caller.user_id}")
        return {"id": record_id, "deleted": True}

    async def upcoming(
        self, caller: CallerContext, limit: int = 10
    ) -> List[ScheduledNotificationResponse]:
        """Pending records in the order they will fire"""
        self.gate.authorize(caller, Action.LIST)

        stmt = select(ScheduledNotification).where(
            ScheduledNotification.status == Status.PENDING,
            ScheduledNotification.deleted_at.is_(None),
        )
        if not self.gate.sees_all_records(caller):
            stmt = stmt.where(ScheduledNotification.created_by == caller.user_id)

        records = self.db.scalars(
            stmt.order_by(ScheduledNotification.next_occurrence_at.asc()).limit(limit)
        ).all()
        return [self._to_response(record) for record in records]

    # Helpers
    async def _get_record_or_404(self, record_id: str) -> ScheduledNotification:
        record = self.repository.get(record_id)
        if not record:
            raise NotFoundError(
                "Scheduled notification not found", "SCHEDULED_NOTIFICATION_NOT_FOUND"
            )
        return record

    def _first_occurrence(self, schedule: ScheduleDescriptor, occurrence_count: int) -> datetime:
        """Next occurrence from now as naive UTC, rejecting schedules with nothing left to fire"""
        upcoming = next_occurrence(schedule, occurrence_count, self.clock())
        if is_exhausted(upcoming):
            raise ScheduleValidationError(
                "Schedule has no future occurrence",
                errors=[
                    {
                        "field": "schedule",
                        "message": "The schedule is already in the past or has run out of occurrences",
                        "type": "schedule_exhausted",
                    }
                ],
            )
        return to_naive_utc(upcoming)  # type: ignore[arg-type]

    def _to_response(
        self, record: ScheduledNotification, include_upcoming: bool = False
    ) -> ScheduledNotificationResponse:
        schedule = parse_schedule_json(record.schedule)
        next_at = optional_to_utc(record.next_occurrence_at)

        preview = None
        if include_upcoming:
            preview = []
            if record.status == Status.PENDING and next_at is not None:
                # next_at itself plus what follows it
                preview = [next_at] + upcoming_occurrences(
                    schedule,
                    record.occurrence_count + 1,
                    next_at,
                    UPCOMING_PREVIEW_SIZE - 1,
                )

        return ScheduledNotificationResponse(
            id=record.id,
            name=record.name,
            notification_type=record.notification_type,
            channels=json.loads(record.channels),
            recipients=parse_recipients_json(record.recipients),
            payload=json.loads(record.payload or "{}"),
            schedule=schedule,
            status=record.status.value,
            next_occurrence_at=next_at,
            occurrence_count=record.occurrence_count,
            created_by=record.created_by,
            created_at=optional_to_utc(record.created_at),
            updated_at=optional_to_utc(record.updated_at),
            last_fired_at=optional_to_utc(record.last_fired_at),
            sent_at=optional_to_utc(record.sent_at),
            cancelled_at=optional_to_utc(record.cancelled_at),
            last_error=record.last_error,
            upcoming_occurrences=preview,
        )


# Dependency injection for service provider
def get_scheduled_notification_service(
    db: Session = Depends(get_sync_session),
) -> ScheduledNotificationService:
    """Dependency to provide ScheduledNotificationService instance"""
    return ScheduledNotificationService(db)
