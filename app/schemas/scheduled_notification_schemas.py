from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from app.db.models import ChannelType, ScheduledNotificationStatus
from app.schemas.camel_base_model import CamelCaseBaseModel
from app.schemas.recipient_schemas import RecipientDescriptor
from app.schemas.schedule_schemas import ScheduleDescriptor


def _dedupe_channels(v: List[ChannelType]) -> List[ChannelType]:
    seen: List[ChannelType] = []
    for channel in v:
        if channel not in seen:
            seen.append(channel)
    return seen


class CreateScheduledNotificationRequest(CamelCaseBaseModel):
    """Request schema for scheduling a notification"""

    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    notification_type: str = Field(
        ..., min_length=1, max_length=255, description="Notification type code"
    )
    channels: List[ChannelType] = Field(
        ..., min_length=1, description="Delivery channels"
    )
    recipients: List[RecipientDescriptor] = Field(
        ..., min_length=1, description="Who should receive the notification"
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque content handed to channel adapters"
    )
    schedule: ScheduleDescriptor = Field(..., description="When to fire")

    @field_validator("channels")
    @classmethod
    def dedupe_channels(cls, v: List[ChannelType]) -> List[ChannelType]:
        return _dedupe_channels(v)


class UpdateScheduledNotificationRequest(CamelCaseBaseModel):
    """Request schema for editing a pending scheduled notification. Omitted fields are kept."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    notification_type: Optional[str] = Field(None, min_length=1, max_length=255)
    channels: Optional[List[ChannelType]] = Field(None, min_length=1)
    recipients: Optional[List[RecipientDescriptor]] = Field(None, min_length=1)
    payload: Optional[Dict[str, Any]] = None
    schedule: Optional[ScheduleDescriptor] = None

    @field_validator("channels")
    @classmethod
    def dedupe_channels(
        cls, v: Optional[List[ChannelType]]
    ) -> Optional[List[ChannelType]]:
        return _dedupe_channels(v) if v is not None else v


class ScheduledNotificationResponse(CamelCaseBaseModel):
    """Response schema for a scheduled notification record"""

    id: str = Field(..., description="Scheduled notification ID")
    name: str
    notification_type: str
    channels: List[str]
    recipients: List[RecipientDescriptor]
    payload: Dict[str, Any]
    schedule: ScheduleDescriptor
    status: str
    next_occurrence_at: Optional[datetime] = None
    occurrence_count: int
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_fired_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    last_error: Optional[str] = None
    upcoming_occurrences: Optional[List[datetime]] = Field(
        None, description="Preview of the next occurrences (detail view only)"
    )


class ScheduledNotificationListQueryParams(BaseModel):
    """Query parameters for scheduled notification list filtering and pagination"""

    status: Optional[ScheduledNotificationStatus] = Field(
        None, description="Filter by status"
    )
    notification_type: Optional[str] = Field(
        None, description="Filter by notification type code"
    )
    start_date: Optional[datetime] = Field(
        None, description="Next occurrence on or after this instant"
    )
    end_date: Optional[datetime] = Field(
        None, description="Next occurrence on or before this instant"
    )
    created_by: Optional[str] = Field(None, description="Filter by creator")
    page: int = Field(1, ge=1, description="Page number")
    per_page: int = Field(15, ge=1, le=100, description="Items per page")


class ScheduledNotificationStats(CamelCaseBaseModel):
    """Aggregate counts for the admin dashboard"""

    total: int
    by_status: Dict[str, int]
    deliveries_succeeded: int
    deliveries_failed: int
    deliveries_timed_out: int
