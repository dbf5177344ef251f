"""Tests for find/link/create identity resolution."""

import dataclasses
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from beout.models.user import User, UserProfile
from beout.services import identity_service
from beout.services.identity_service import IdentityResolver, split_display_name


async def _count_users(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(User))).scalar_one()


class TestSplitDisplayName:
    def test_two_parts(self):
        assert split_display_name("Ada Lovelace") == ("Ada", "Lovelace")

    def test_rest_goes_to_last_name(self):
        assert split_display_name("Ada Lovelace King") == ("Ada", "Lovelace King")

    def test_single_name(self):
        assert split_display_name("Cher") == ("Cher", "")

    def test_empty(self):
        assert split_display_name(None) == ("", "")
        assert split_display_name("") == ("", "")


class TestResolve:
    @pytest.mark.asyncio
    async def test_creates_user_and_profile(self, session_factory, google_assertion):
        resolver = IdentityResolver(session_factory)

        user = await resolver.resolve(google_assertion)

        assert user.email == "ada@example.com"
        assert user.provider == "google"
        assert user.role == "user"
        assert user.is_verified is True
        async with session_factory() as session:
            profile = (await session.execute(select(UserProfile))).scalar_one()
            assert profile.first_name == "Ada"
            assert profile.last_name == "Lovelace"
            assert str(profile.user_id) == user.id

    @pytest.mark.asyncio
    async def test_display_name_is_split_when_no_given_name(self, session_factory, google_assertion):
        assertion = dataclasses.replace(google_assertion, given_name=None, family_name=None, display_name="Grace B Hopper")
        await IdentityResolver(session_factory).resolve(assertion)

        async with session_factory() as session:
            profile = (await session.execute(select(UserProfile))).scalar_one()
            assert (profile.first_name, profile.last_name) == ("Grace", "B Hopper")

    @pytest.mark.asyncio
    async def test_finds_existing_user_by_provider_identity(self, session_factory, google_assertion):
        resolver = IdentityResolver(session_factory)
        first = await resolver.resolve(google_assertion)
        second = await resolver.resolve(google_assertion)

        assert second.id == first.id
        assert await _count_users(session_factory) == 1

    @pytest.mark.asyncio
    async def test_updates_last_login(self, session_factory, google_assertion):
        resolver = IdentityResolver(session_factory)
        first = await resolver.resolve(google_assertion)
        second = await resolver.resolve(google_assertion)
        assert second.last_login >= first.last_login

    @pytest.mark.asyncio
    async def test_links_existing_email_to_new_provider(self, session_factory, google_assertion):
        resolver = IdentityResolver(session_factory)
        google_user = await resolver.resolve(google_assertion)

        apple = dataclasses.replace(google_assertion, provider="apple", provider_user_id="apple-sub-9", avatar_url=None)
        linked = await resolver.resolve(apple)

        assert linked.id == google_user.id
        assert linked.provider == "apple"
        assert await _count_users(session_factory) == 1
        async with session_factory() as session:
            row = (await session.execute(select(User))).scalar_one()
            assert row.provider_id == "apple-sub-9"
            # avatar kept from the first provider
            assert row.avatar_url == "https://example.com/ada.png"

    @pytest.mark.asyncio
    async def test_distinct_emails_create_distinct_users(self, session_factory, google_assertion):
        resolver = IdentityResolver(session_factory)
        await resolver.resolve(google_assertion)
        other = dataclasses.replace(google_assertion, provider_user_id="google-sub-456", email="grace@example.com")
        await resolver.resolve(other)
        assert await _count_users(session_factory) == 2


class TestConcurrentFirstLogin:
    @pytest.mark.asyncio
    async def test_retries_once_after_unique_violation(self, session_factory, google_assertion):
        real_resolve = identity_service.resolve_user
        calls = 0

        async def racing_resolve(session, assertion, now=None):
            nonlocal calls
            calls += 1
            if calls == 1:
                # another worker inserts the same identity first
                async with session_factory() as other:
                    async with other.begin():
                        await real_resolve(other, assertion)
                raise IntegrityError("INSERT INTO users", {}, Exception("duplicate key"))
            return await real_resolve(session, assertion, now)

        with patch.object(identity_service, "resolve_user", racing_resolve):
            user = await IdentityResolver(session_factory).resolve(google_assertion)

        assert calls == 2
        assert user.email == "ada@example.com"
        assert await _count_users(session_factory) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session_factory, google_assertion):
        async def always_conflicts(session, assertion, now=None):
            raise IntegrityError("INSERT INTO users", {}, Exception("duplicate key"))

        with patch.object(identity_service, "resolve_user", always_conflicts):
            with pytest.raises(IntegrityError):
                await IdentityResolver(session_factory, max_attempts=2).resolve(google_assertion)
