"""
Tests for identity resolution, creation and backfill
"""

import asyncio

import pytest
from sqlalchemy import func, select

from database import get_async_session
from models import User
from services.identity_resolver import Identifiers, UserProfile, default_display_name
from utils.exceptions import IdentityConflictError, NotFoundError, ValidationError

WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20


async def count_users(session_factory) -> int:
    async with get_async_session(session_factory) as session:
        return (await session.execute(select(func.count(User.id)))).scalar_one()


class TestResolveAndCreate:

    @pytest.mark.asyncio
    async def test_same_identifier_resolves_to_same_user(self, identity_resolver, session_factory):
        first = await identity_resolver.resolve_identity({"email": "alice@example.com"})
        second = await identity_resolver.resolve_identity({"email": "ALICE@example.com "})

        assert first.created is True
        assert second.created is False
        assert first.user.id == second.user.id
        assert await count_users(session_factory) == 1

    @pytest.mark.asyncio
    async def test_wallet_user_defaults(self, identity_resolver):
        user = await identity_resolver.resolve({"wallet_address": WALLET.upper().replace("0X", "0x")})

        assert user.wallet_address == WALLET
        assert user.display_name == f"User_{WALLET[-6:]}"
        assert user.onboarding_channel == "wallet"
        assert user.is_verified is True

    @pytest.mark.asyncio
    async def test_chat_user_defaults(self, identity_resolver):
        user = await identity_resolver.resolve({"chat_id": "987654"})

        assert user.chat_id == 987654
        assert user.display_name == "Telegram_987654"
        assert user.onboarding_channel == "telegram"
        assert user.is_verified is False

    @pytest.mark.asyncio
    async def test_email_user_defaults(self, identity_resolver):
        user = await identity_resolver.resolve({"email": "bob.smith@example.com"})

        assert user.display_name == "bob.smith"
        assert user.onboarding_channel == "web"

    @pytest.mark.asyncio
    async def test_profile_applies_on_creation(self, identity_resolver):
        user = await identity_resolver.resolve(
            {"email": "carol@example.com"}, UserProfile(display_name="Carol", onboarding_channel="assistant")
        )

        assert user.display_name == "Carol"
        assert user.onboarding_channel == "assistant"

    @pytest.mark.asyncio
    async def test_all_identifiers_seed_the_new_user(self, identity_resolver):
        user = await identity_resolver.resolve(
            Identifiers.normalized(wallet_address=WALLET, chat_id=55, email="dave@example.com")
        )

        assert (user.wallet_address, user.chat_id, user.email) == (WALLET, 55, "dave@example.com")
        assert user.display_name == f"User_{WALLET[-6:]}"
        assert user.onboarding_channel == "telegram"

    @pytest.mark.asyncio
    async def test_no_identifier_is_rejected(self, identity_resolver):
        with pytest.raises(ValidationError):
            await identity_resolver.resolve({})

    @pytest.mark.asyncio
    async def test_malformed_identifier_is_rejected(self, identity_resolver):
        with pytest.raises(ValidationError):
            await identity_resolver.resolve({"email": "not-an-email"})

    @pytest.mark.asyncio
    async def test_unknown_channel_is_rejected(self, identity_resolver):
        with pytest.raises(ValidationError):
            await identity_resolver.resolve({"email": "x@example.com"}, UserProfile(onboarding_channel="fax"))

    @pytest.mark.asyncio
    async def test_concurrent_first_contact_creates_one_user(self, identity_resolver, session_factory):
        users = await asyncio.gather(*[identity_resolver.resolve({"chat_id": 4242}) for _ in range(5)])

        assert len({user.id for user in users}) == 1
        assert await count_users(session_factory) == 1


class TestConflicts:

    @pytest.mark.asyncio
    async def test_identifiers_of_two_users_conflict(self, identity_resolver, session_factory):
        u1 = await identity_resolver.resolve({"wallet_address": WALLET})
        u2 = await identity_resolver.resolve({"email": "e2@example.com"})

        with pytest.raises(IdentityConflictError):
            await identity_resolver.resolve({"wallet_address": WALLET, "email": "e2@example.com"})

        assert await count_users(session_factory) == 2
        assert (await identity_resolver.get_user(u1.id)).email is None
        assert (await identity_resolver.get_user(u2.id)).wallet_address is None

    @pytest.mark.asyncio
    async def test_contradicting_stored_identifier_conflicts(self, identity_resolver):
        await identity_resolver.resolve({"wallet_address": WALLET, "email": "first@example.com"})

        with pytest.raises(IdentityConflictError):
            await identity_resolver.resolve({"wallet_address": WALLET, "email": "second@example.com"})

    @pytest.mark.asyncio
    async def test_find_user_reports_conflicts(self, identity_resolver):
        await identity_resolver.resolve({"wallet_address": WALLET})
        await identity_resolver.resolve({"wallet_address": OTHER_WALLET, "chat_id": 11})

        with pytest.raises(IdentityConflictError):
            await identity_resolver.find_user({"wallet_address": WALLET, "chat_id": 11})

        found = await identity_resolver.find_user({"chat_id": "11"})
        assert found.wallet_address == OTHER_WALLET


class TestBackfill:

    @pytest.mark.asyncio
    async def test_missing_identifier_is_added(self, identity_resolver):
        created = await identity_resolver.resolve({"wallet_address": WALLET})

        resolution = await identity_resolver.resolve_identity({"wallet_address": WALLET, "email": "w@example.com"})

        assert resolution.user.id == created.id
        assert resolution.created is False
        assert resolution.backfilled_fields == ["email"]
        assert resolution.user.email == "w@example.com"

    @pytest.mark.asyncio
    async def test_profile_never_overwrites_existing_user(self, identity_resolver):
        created = await identity_resolver.resolve({"email": "erin@example.com"}, UserProfile(display_name="Erin"))

        again = await identity_resolver.resolve({"email": "erin@example.com"}, UserProfile(display_name="Someone"))

        assert again.id == created.id
        assert again.display_name == "Erin"


class TestLookups:

    @pytest.mark.asyncio
    async def test_find_user_does_not_create(self, identity_resolver, session_factory):
        assert await identity_resolver.find_user({"email": "ghost@example.com"}) is None
        assert await count_users(session_factory) == 0

    @pytest.mark.asyncio
    async def test_get_user_unknown(self, identity_resolver):
        with pytest.raises(NotFoundError):
            await identity_resolver.get_user(12345)

    def test_default_display_name_priority(self):
        ids = Identifiers.normalized(chat_id=7, email="zed@example.com")
        assert default_display_name(ids) == "Telegram_7"
