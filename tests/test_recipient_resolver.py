import pytest
from typing import Dict, FrozenSet, Iterable

from app.db.models import ChannelType
from app.schemas.recipient_schemas import (
    EveryoneRecipient,
    GroupRecipient,
    RoleRecipient,
    UserRecipient,
    recipient_list_adapter,
)
from app.services.notifications.directory import (
    ALL_CHANNELS,
    SqlPreferenceStore,
    SqlRecipientDirectory,
)
from app.services.notifications.recipient_resolver import RecipientResolver
from app.utils.errors import RecipientResolutionError

from conftest import disable_channel, utc


class FakeDirectory:
    def __init__(self, members: Dict[str, Iterable[str]]):
        self.members = members

    async def expand(self, descriptor, as_of):
        key = descriptor.type if descriptor.type == "everyone" else f"{descriptor.type}:{descriptor.id}"
        return set(self.members.get(key, ()))


class FakePreferences:
    def __init__(self, opt_outs: Dict[str, FrozenSet[str]] = None):
        self.opt_outs = opt_outs or {}

    async def allowed_channels(self, user_id, notification_type):
        return ALL_CHANNELS - self.opt_outs.get(user_id, frozenset())


class BrokenDirectory:
    async def expand(self, descriptor, as_of):
        raise ConnectionError("directory offline")


class TestRecipientResolver:
    """Union, dedupe and preference intersection against in-memory collaborators."""

    @pytest.mark.asyncio
    async def test_role_and_user_overlap_is_deduplicated(self):
        directory = FakeDirectory({"role:teacher": ["41", "42"], "user:42": ["42"]})
        resolver = RecipientResolver(directory, FakePreferences())

        resolved = await resolver.resolve(
            [RoleRecipient(id="teacher"), UserRecipient(id=42)],
            ["mail"],
            "announcement",
            utc(2025, 1, 1),
        )

        assert [r.user_id for r in resolved] == ["41", "42"]

    @pytest.mark.asyncio
    async def test_opted_out_channel_removed(self):
        directory = FakeDirectory({"user:7": ["7"]})
        resolver = RecipientResolver(directory, FakePreferences({"7": frozenset({"sms"})}))

        resolved = await resolver.resolve(
            [UserRecipient(id="7")], ["mail", "sms"], "X", utc(2025, 1, 1)
        )

        assert len(resolved) == 1
        assert resolved[0].channels == frozenset({"mail"})

    @pytest.mark.asyncio
    async def test_user_with_no_channels_left_is_dropped(self):
        directory = FakeDirectory({"user:7": ["7"], "user:8": ["8"]})
        resolver = RecipientResolver(directory, FakePreferences({"7": frozenset({"sms"})}))

        resolved = await resolver.resolve(
            [UserRecipient(id="7"), UserRecipient(id="8")], ["sms"], "X", utc(2025, 1, 1)
        )

        assert [r.user_id for r in resolved] == ["8"]

    @pytest.mark.asyncio
    async def test_resolution_is_repeatable(self):
        directory = FakeDirectory({"everyone": ["1", "2", "3"]})
        resolver = RecipientResolver(directory, FakePreferences())
        args = ([EveryoneRecipient()], ["mail", "push"], "X", utc(2025, 1, 1))

        assert await resolver.resolve(*args) == await resolver.resolve(*args)

    @pytest.mark.asyncio
    async def test_directory_failure_raises_resolution_error(self):
        resolver = RecipientResolver(BrokenDirectory(), FakePreferences())

        with pytest.raises(RecipientResolutionError) as exc_info:
            await resolver.resolve([EveryoneRecipient()], ["mail"], "X", utc(2025, 1, 1))

        assert "directory offline" in exc_info.value.message


class TestSqlDirectory:
    """Default collaborators backed by the directory tables."""

    @pytest.fixture
    def resolver(self, session_factory):
        return RecipientResolver(
            SqlRecipientDirectory(session_factory), SqlPreferenceStore(session_factory)
        )

    @pytest.mark.asyncio
    async def test_teacher_role_plus_user_42(self, resolver, school_directory):
        resolved = await resolver.resolve(
            [RoleRecipient(id="teacher"), UserRecipient(id=42)],
            ["mail"],
            "announcement",
            utc(2025, 1, 1),
        )

        # 45 is an inactive teacher
        assert [r.user_id for r in resolved] == ["41", "42"]

    @pytest.mark.asyncio
    async def test_no_sms_preference(self, resolver, school_directory, db_session):
        disable_channel(db_session, "41", "X", ChannelType.SMS)

        resolved = await resolver.resolve(
            [UserRecipient(id="41")], ["mail", "sms"], "X", utc(2025, 1, 1)
        )

        assert resolved[0].channels == frozenset({"mail"})

    @pytest.mark.asyncio
    async def test_preference_is_per_notification_type(self, resolver, school_directory, db_session):
        disable_channel(db_session, "41", "X", ChannelType.SMS)

        resolved = await resolver.resolve(
            [UserRecipient(id="41")], ["mail", "sms"], "Y", utc(2025, 1, 1)
        )

        assert resolved[0].channels == frozenset({"mail", "sms"})

    @pytest.mark.asyncio
    async def test_group_membership_respects_dates(self, resolver, school_directory):
        resolved = await resolver.resolve(
            [GroupRecipient(id="class-7a")], ["database"], "X", utc(2025, 1, 1)
        )
        assert [r.user_id for r in resolved] == ["43"]

        resolved = await resolver.resolve(
            [GroupRecipient(id="class-7a")], ["database"], "X", utc(2024, 1, 1)
        )
        assert [r.user_id for r in resolved] == ["44"]

    @pytest.mark.asyncio
    async def test_everyone_is_all_active_users(self, resolver, school_directory):
        resolved = await resolver.resolve([EveryoneRecipient()], ["push"], "X", utc(2025, 1, 1))

        assert [r.user_id for r in resolved] == ["41", "42", "43", "44"]

    @pytest.mark.asyncio
    async def test_unknown_user_resolves_to_nobody(self, resolver, school_directory):
        resolved = await resolver.resolve([UserRecipient(id="999")], ["mail"], "X", utc(2025, 1, 1))

        assert resolved == []


class TestRecipientDescriptors:
    def test_mixed_list_parses_by_type(self):
        recipients = recipient_list_adapter.validate_python(
            [{"type": "role", "id": "teacher"}, {"type": "user", "id": 42}, {"type": "everyone"}]
        )

        assert isinstance(recipients[0], RoleRecipient)
        assert recipients[1].id == "42"
        assert isinstance(recipients[2], EveryoneRecipient)
