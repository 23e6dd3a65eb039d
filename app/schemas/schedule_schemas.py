from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.config.settings import settings
from app.utils.datetime_utils import in_zone, to_utc
from app.utils.errors import ScheduleValidationError, format_validation_errors


class ScheduleType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class IntervalUnit(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# End conditions
class NeverEnds(_FrozenModel):
    kind: Literal["never"] = "never"


class EndsOnDate(_FrozenModel):
    kind: Literal["on_date"] = "on_date"
    end_date: datetime


class EndsAfterOccurrences(_FrozenModel):
    kind: Literal["after_occurrences"] = "after_occurrences"
    occurrences: int = Field(..., ge=1)


EndCondition = Annotated[
    Union[NeverEnds, EndsOnDate, EndsAfterOccurrences],
    Field(discriminator="kind"),
]


# Schedule descriptors
class _ScheduleBase(_FrozenModel):
    anchor_datetime: datetime = Field(
        ..., description="First occurrence; wall-clock time in `timezone` when naive"
    )
    timezone: str = Field(
        default_factory=lambda: settings.DEFAULT_TIMEZONE,
        validate_default=True,
        description="IANA timezone name; defaults to DEFAULT_TIMEZONE",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def local_anchor(self) -> datetime:
        """Anchor as an aware datetime in the schedule's own zone."""
        return in_zone(self.anchor_datetime, self.zone)

    @property
    def anchor_utc(self) -> datetime:
        return to_utc(self.local_anchor)


class OnceSchedule(_ScheduleBase):
    type: Literal["once"] = "once"


class _RecurringSchedule(_ScheduleBase):
    end_condition: EndCondition = Field(default_factory=NeverEnds)

    @model_validator(mode="after")
    def validate_end_date_after_anchor(self):
        if isinstance(self.end_condition, EndsOnDate):
            end_date = in_zone(self.end_condition.end_date, self.zone)
            if end_date < self.local_anchor:
                raise ValueError("end_date must not be earlier than anchor_datetime")
        return self

    @property
    def end_date_utc(self):
        if isinstance(self.end_condition, EndsOnDate):
            return to_utc(in_zone(self.end_condition.end_date, self.zone))
        return None


class DailySchedule(_RecurringSchedule):
    type: Literal["daily"] = "daily"


class WeeklySchedule(_RecurringSchedule):
    type: Literal["weekly"] = "weekly"


class MonthlySchedule(_RecurringSchedule):
    type: Literal["monthly"] = "monthly"


class CustomSchedule(_RecurringSchedule):
    type: Literal["custom"] = "custom"
    interval: int = Field(..., ge=1)
    unit: IntervalUnit


ScheduleDescriptor = Annotated[
    Union[OnceSchedule, DailySchedule, WeeklySchedule, MonthlySchedule, CustomSchedule],
    Field(discriminator="type"),
]

RecurringSchedule = Union[DailySchedule, WeeklySchedule, MonthlySchedule, CustomSchedule]

schedule_adapter: TypeAdapter = TypeAdapter(ScheduleDescriptor)


def parse_schedule(data: Any) -> ScheduleDescriptor:
    """Build a schedule descriptor from raw data, raising ScheduleValidationError."""
    try:
        return schedule_adapter.validate_python(data)
    except ValidationError as e:
        raise ScheduleValidationError(
            "Invalid schedule definition", errors=format_validation_errors(e.errors())
        )


def parse_schedule_json(raw: str) -> ScheduleDescriptor:
    return schedule_adapter.validate_json(raw)


def dump_schedule_json(schedule: ScheduleDescriptor) -> str:
    return schedule_adapter.dump_json(schedule).decode("utf-8")
