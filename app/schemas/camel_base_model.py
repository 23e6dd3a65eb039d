from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


class CamelCaseBaseModel(BaseModel):
    """
    Base for API-facing models.

    Clients send and receive camelCase keys (`anchorDatetime`,
    `nextOccurrenceAt`); Python code uses the snake_case field names. Either
    spelling is accepted on input. Dump with `by_alias=True` for responses.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_serializer("*")
    def serialize_any(self, value):
        """Turn enums, datetimes, sets and nested models into JSON-ready values"""
        # Nested models keep their own aliases
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json", by_alias=True)

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, (datetime, date)):
            return value.isoformat()

        if isinstance(value, (list, tuple)):
            return [self.serialize_any(item) for item in value]

        if isinstance(value, (set, frozenset)):
            # Sorted so channel sets render the same on every call
            return sorted(self.serialize_any(item) for item in value)

        if isinstance(value, dict):
            return {key: self.serialize_any(val) for key, val in value.items()}

        return value
