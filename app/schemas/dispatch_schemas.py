from typing import List, Optional
from pydantic import Field

from app.schemas.camel_base_model import CamelCaseBaseModel


class DeliveryFailure(CamelCaseBaseModel):
    """A (user, channel) pair that could not be delivered, or a record that could not be resolved."""

    notification_id: str
    user_id: Optional[str] = None
    channel: Optional[str] = None
    error: str


class DispatchReport(CamelCaseBaseModel):
    """Summary of one dispatch run"""

    selected: int = Field(0, description="Due records picked up by the query")
    claimed: int = Field(0, description="Records this run won the claim for")
    skipped: int = Field(0, description="Records claimed by someone else first")
    fired: int = Field(0, description="Occurrences that fired")
    released: int = Field(0, description="Claims handed back without firing")
    recovered: int = Field(0, description="Stale claims reset to pending")
    deliveries_succeeded: int = 0
    deliveries_failed: int = 0
    failures: List[DeliveryFailure] = Field(default_factory=list)
