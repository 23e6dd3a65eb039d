from abc import ABC, abstractmethod
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.config.settings import settings
from app.db.models import ScheduledNotification
from app.utils.errors import AuthorizationError
from app.utils.logging import get_logger

logger = get_logger()


class CallerContext(BaseModel):
    """Who is calling a scheduled notification operation."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    roles: FrozenSet[str] = Field(default_factory=frozenset)

    @classmethod
    def of(cls, user_id: str, roles: Iterable[str] = ()) -> "CallerContext":
        return cls(user_id=user_id, roles=frozenset(r.strip() for r in roles if r.strip()))

    def has_role(self, role: str) -> bool:
        return role in self.roles


class ScheduledNotificationAction(str, Enum):
    CREATE = "create"
    VIEW = "view"
    LIST = "list"
    UPDATE = "update"
    CANCEL = "cancel"
    DELETE = "delete"
    STATS = "stats"


class AuthorizationGate(ABC):
    """Decides who may do what to which scheduled notification"""

    @abstractmethod
    def authorize(
        self,
        caller: CallerContext,
        action: ScheduledNotificationAction,
        record: Optional[ScheduledNotification] = None,
    ) -> None:
        """Raise AuthorizationError when the caller may not perform the action"""
        pass

    @abstractmethod
    def sees_all_records(self, caller: CallerContext) -> bool:
        """Whether list views are unrestricted for this caller"""
        pass


class RoleBasedAuthorizationGate(AuthorizationGate):
    """
    Admins may do anything. Everyone else may create records and view, update,
    cancel or delete the ones they created. Stats are admin-only.
    """

    _OWNER_ACTIONS = frozenset(
        {
            ScheduledNotificationAction.VIEW,
            ScheduledNotificationAction.UPDATE,
            ScheduledNotificationAction.CANCEL,
            ScheduledNotificationAction.DELETE,
        }
    )

    def __init__(self, admin_role: Optional[str] = None):
        self.admin_role = admin_role or settings.ADMIN_ROLE

    def sees_all_records(self, caller: CallerContext) -> bool:
        return caller.has_role(self.admin_role)

    def authorize(
        self,
        caller: CallerContext,
        action: ScheduledNotificationAction,
        record: Optional[ScheduledNotification] = None,
    ) -> None:
        if caller.has_role(self.admin_role):
            return

        if action in (ScheduledNotificationAction.CREATE, ScheduledNotificationAction.LIST):
            return

        if (
            action in self._OWNER_ACTIONS
            and record is not None
            and record.created_by == caller.user_id
        ):
            return

        logger.warning(
            f"Denied {action.value} on scheduled notification "
            f"{record.id if record is not None else '-'} for user {caller.user_id}"
        )
        raise AuthorizationError(
            f"Not allowed to {action.value} this scheduled notification",
            "INSUFFICIENT_PERMISSIONS",
        )
