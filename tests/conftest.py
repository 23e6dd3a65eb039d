import pytest
import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import (
    Base,
    ChannelType,
    ClassMembership,
    NotificationPreference,
    Role,
    SchoolClass,
    User,
    UserRole,
)
from app.services.notifications.authorization import CallerContext
from app.services.notifications.channels import BaseChannelAdapter, ChannelAdapterRegistry
from app.services.notifications.dispatcher import NotificationDispatcher
from app.services.notifications.scheduled_notification_service import (
    ScheduledNotificationService,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingAdapter(BaseChannelAdapter):
    """Channel adapter that records sends and can be told to fail, hang or refuse."""

    def __init__(self, session_factory, channel: str, behaviour: "AdapterBehaviour"):
        super().__init__(session_factory, channel)
        self.behaviour = behaviour

    async def send(self, user_id, notification_type, payload) -> bool:
        mode = self.behaviour.modes.get(self.channel, "ok")
        if mode == "hang":
            await asyncio.sleep(5)
        await asyncio.sleep(0)
        self.behaviour.sent.append((user_id, self.channel, notification_type))
        if mode == "raise":
            raise RuntimeError(f"{self.channel} gateway unavailable")
        if mode == "refuse":
            return False
        return True


class AdapterBehaviour:
    def __init__(self):
        self.modes: Dict[str, str] = {}
        self.sent: List[Tuple[str, str, str]] = []

    def registry(self) -> ChannelAdapterRegistry:
        def factory(session_factory, channel):
            return RecordingAdapter(session_factory, channel, self)

        return ChannelAdapterRegistry({channel.value: factory for channel in ChannelType})


# Test database setup
@pytest.fixture
def test_engine(tmp_path):
    """File-backed SQLite so separate sessions really are separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """Create a database session for each test."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(utc(2025, 1, 1, 0, 0))


@pytest.fixture
def adapters() -> AdapterBehaviour:
    return AdapterBehaviour()


@pytest.fixture
def service(db_session, clock) -> ScheduledNotificationService:
    return ScheduledNotificationService(db_session, clock=clock)


@pytest.fixture
def dispatcher(session_factory, adapters) -> NotificationDispatcher:
    return NotificationDispatcher(
        session_factory=session_factory,
        adapters=adapters.registry(),
        batch_size=50,
        max_workers=4,
        delivery_timeout_seconds=0.2,
        claim_timeout_seconds=900,
    )


# Callers
@pytest.fixture
def admin() -> CallerContext:
    return CallerContext.of("admin-1", ["admin"])


@pytest.fixture
def teacher_caller() -> CallerContext:
    return CallerContext.of("teacher-1", ["teacher"])


@pytest.fixture
def other_caller() -> CallerContext:
    return CallerContext.of("teacher-2", ["teacher"])


# Test data factories
def make_user(
    db_session: Session, user_id: str, is_active: bool = True, roles=()
) -> User:
    user = User(
        id=user_id,
        username=f"user{user_id}@school.test",
        first_name="User",
        last_name=user_id,
        email=f"user{user_id}@school.test",
        is_active=is_active,
    )
    db_session.add(user)
    db_session.flush()
    for role in roles:
        db_session.add(UserRole(user_id=user.id, role_id=role.id))
    db_session.commit()
    return user


@pytest.fixture
def teacher_role(db_session) -> Role:
    role = Role(name="teacher", description="Teaching staff")
    db_session.add(role)
    db_session.commit()
    return role


@pytest.fixture
def school_directory(db_session, teacher_role):
    """
    Users 41 and 42 teach; 43 is a student in class 7A; 44 left 7A in 2024;
    45 is an inactive teacher.
    """
    make_user(db_session, "41", roles=[teacher_role])
    make_user(db_session, "42", roles=[teacher_role])
    make_user(db_session, "43")
    make_user(db_session, "44")
    make_user(db_session, "45", is_active=False, roles=[teacher_role])

    school_class = SchoolClass(id="class-7a", code="7A", name="Grade 7 A")
    db_session.add(school_class)
    db_session.add_all(
        [
            ClassMembership(
                class_id="class-7a",
                user_id="43",
                joined_at=datetime(2024, 8, 1),
            ),
            ClassMembership(
                class_id="class-7a",
                user_id="44",
                joined_at=datetime(2023, 8, 1),
                left_at=datetime(2024, 6, 1),
            ),
        ]
    )
    db_session.commit()
    return school_class


def disable_channel(
    db_session: Session, user_id: str, notification_type: str, channel: ChannelType
) -> NotificationPreference:
    preference = NotificationPreference(
        user_id=user_id,
        notification_type=notification_type,
        channel=channel,
        is_enabled=False,
    )
    db_session.add(preference)
    db_session.commit()
    return preference


def notification_data(
    schedule: dict,
    recipients: Optional[list] = None,
    channels: Optional[list] = None,
    name: str = "Parent meeting reminder",
    notification_type: str = "announcement",
) -> dict:
    return {
        "name": name,
        "notification_type": notification_type,
        "channels": channels or ["mail"],
        "recipients": recipients or [{"type": "user", "id": "41"}],
        "payload": {"subject": name, "body": "See you there"},
        "schedule": schedule,
    }
