import asyncio
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, Protocol, Set

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.db.models import (
    ChannelType,
    ClassMembership,
    NotificationPreference,
    Role,
    User,
    UserRole,
)
from app.schemas.recipient_schemas import (
    EveryoneRecipient,
    GroupRecipient,
    RecipientDescriptor,
    RoleRecipient,
    UserRecipient,
)
from app.utils.datetime_utils import to_naive_utc

ALL_CHANNELS: FrozenSet[str] = frozenset(channel.value for channel in ChannelType)


class RecipientDirectory(Protocol):
    """Expands one recipient descriptor to user ids."""

    async def expand(
        self, descriptor: RecipientDescriptor, as_of: datetime
    ) -> Iterable[str]: ...


class PreferenceStore(Protocol):
    """Answers which channels a user accepts for a notification type."""

    async def allowed_channels(
        self, user_id: str, notification_type: str
    ) -> FrozenSet[str]: ...


class SqlRecipientDirectory:
    """Directory backed by the users, roles and class membership tables. Only active users are returned."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def expand(self, descriptor: RecipientDescriptor, as_of: datetime) -> Set[str]:
        as_of_naive = to_naive_utc(as_of)
        active = User.is_active == True

        if isinstance(descriptor, UserRecipient):
            stmt = select(User.id).where(User.id == descriptor.id, active)
        elif isinstance(descriptor, RoleRecipient):
            stmt = (
                select(User.id)
                .join(UserRole, UserRole.user_id == User.id)
                .join(Role, Role.id == UserRole.role_id)
                .where(Role.name == descriptor.id, active)
            )
        elif isinstance(descriptor, GroupRecipient):
            stmt = (
                select(User.id)
                .join(ClassMembership, ClassMembership.user_id == User.id)
                .where(
                    and_(
                        ClassMembership.class_id == descriptor.id,
                        or_(
                            ClassMembership.joined_at.is_(None),
                            ClassMembership.joined_at <= as_of_naive,
                        ),
                        or_(
                            ClassMembership.left_at.is_(None),
                            ClassMembership.left_at > as_of_naive,
                        ),
                        active,
                    )
                )
            )
        elif isinstance(descriptor, EveryoneRecipient):
            stmt = select(User.id).where(active)
        else:
            raise TypeError(f"Unsupported recipient descriptor: {descriptor!r}")

        # Sessions are synchronous, so queries run in the thread pool
        def _expand_sync():
            with self.session_factory() as db_session:
                return set(db_session.scalars(stmt).all())

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _expand_sync)


class SqlPreferenceStore:
    """Opt-out preferences: a channel is allowed unless a disabled row exists for it."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def allowed_channels(
        self, user_id: str, notification_type: str
    ) -> FrozenSet[str]:
        stmt = select(NotificationPreference.channel).where(
            NotificationPreference.user_id == user_id,
            NotificationPreference.notification_type == notification_type,
            NotificationPreference.is_enabled == False,
        )

        def _disabled_sync():
            with self.session_factory() as db_session:
                return {channel.value for channel in db_session.scalars(stmt).all()}

        loop = asyncio.get_event_loop()
        disabled = await loop.run_in_executor(None, _disabled_sync)
        return ALL_CHANNELS - disabled
