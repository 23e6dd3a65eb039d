from typing import Annotated, FrozenSet, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class _RecipientBase(BaseModel):
    model_config = ConfigDict(frozen=True)


class _IdentifiedRecipient(_RecipientBase):
    id: str = Field(..., min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        # Directory ids arrive as ints from some clients
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class UserRecipient(_IdentifiedRecipient):
    type: Literal["user"] = "user"


class RoleRecipient(_IdentifiedRecipient):
    """A role by name, e.g. ``teacher``."""

    type: Literal["role"] = "role"


class GroupRecipient(_IdentifiedRecipient):
    """A group of users such as a school class."""

    type: Literal["group"] = "group"


class EveryoneRecipient(_RecipientBase):
    type: Literal["everyone"] = "everyone"


RecipientDescriptor = Annotated[
    Union[UserRecipient, RoleRecipient, GroupRecipient, EveryoneRecipient],
    Field(discriminator="type"),
]

recipient_list_adapter: TypeAdapter = TypeAdapter(List[RecipientDescriptor])


class ResolvedRecipient(_RecipientBase):
    """A concrete user and the channels they may be reached on for one run."""

    user_id: str
    channels: FrozenSet[str]


def parse_recipients_json(raw: str) -> List[RecipientDescriptor]:
    return recipient_list_adapter.validate_json(raw)


def dump_recipients_json(recipients: List[RecipientDescriptor]) -> str:
    return recipient_list_adapter.dump_json(recipients).decode("utf-8")
