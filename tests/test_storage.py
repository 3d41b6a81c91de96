"""
Tests for the storage implementations and the user upsert.
"""

from datetime import timedelta

import pytest

from sso_web_app.errors import ErrorKind, StorageError, classify
from sso_web_app.models import NormalizedProfile, Provider, Session, utcnow
from sso_web_app.storage import (
    InMemoryStorage,
    SQLStorage,
    create_or_update_user,
    create_storage,
)


@pytest.fixture(params=["memory", "sqlite"])
async def any_storage(request, tmp_path):
    """Run each contract test against both implementations."""
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLStorage(f"sqlite:///{tmp_path / 'test.db'}")
    await store.initialize()
    yield store
    await store.close()


def profile(name="ghuser", email="a@x.com", user_id="67890"):
    return NormalizedProfile(Provider.GITHUB, user_id, name, email)


def make_session(user_id, session_id="sid-1", age=timedelta(0), ttl=timedelta(hours=24)):
    created = utcnow() - age
    return Session(session_id, user_id, created_at=created, expires_at=created + ttl)


class TestStorageContract:
    """Test behaviour shared by every storage"""

    @pytest.mark.asyncio
    async def test_ping(self, any_storage):
        assert await any_storage.ping() is True

    @pytest.mark.asyncio
    async def test_user_lookup_by_identity_and_id(self, any_storage):
        created = await any_storage.create_user(profile())

        by_identity = await any_storage.find_user_by_provider_id(Provider.GITHUB, "67890")
        by_id = await any_storage.find_user_by_id(created.id)

        assert by_identity.id == created.id
        assert by_id.display_name == "ghuser"
        assert by_id.provider == Provider.GITHUB
        assert await any_storage.find_user_by_provider_id(Provider.MICROSOFT, "67890") is None

    @pytest.mark.asyncio
    async def test_identity_is_unique(self, any_storage):
        await any_storage.create_user(profile())

        with pytest.raises(StorageError) as exc_info:
            await any_storage.create_user(profile(name="other"))
        assert classify(exc_info.value) == ErrorKind.DATABASE

    @pytest.mark.asyncio
    async def test_session_round_trip_keeps_timezone(self, any_storage):
        user = await any_storage.create_user(profile())
        session = make_session(user.id)

        await any_storage.create_session(session)
        found = await any_storage.find_session(session.session_id)

        assert found.user_id == user.id
        assert found.expires_at.tzinfo is not None
        assert abs(found.expires_at - session.expires_at) < timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_delete_session(self, any_storage):
        user = await any_storage.create_user(profile())
        await any_storage.create_session(make_session(user.id))

        assert await any_storage.delete_session("sid-1") is True
        assert await any_storage.delete_session("sid-1") is False
        assert await any_storage.find_session("sid-1") is None

    @pytest.mark.asyncio
    async def test_delete_expired_sessions(self, any_storage):
        user = await any_storage.create_user(profile())
        await any_storage.create_session(make_session(user.id, "old", age=timedelta(hours=25)))
        await any_storage.create_session(make_session(user.id, "new"))

        assert await any_storage.delete_expired_sessions(utcnow()) == 1
        assert await any_storage.find_session("old") is None
        assert await any_storage.find_session("new") is not None


class TestCreateOrUpdateUser:
    """Test user upsert keyed by provider identity"""

    @pytest.mark.asyncio
    async def test_first_login_creates(self, any_storage):
        user = await create_or_update_user(any_storage, profile())
        assert user.email == "a@x.com"

    @pytest.mark.asyncio
    async def test_later_login_updates_mutable_fields(self, any_storage):
        first = await create_or_update_user(any_storage, profile())

        second = await create_or_update_user(
            any_storage, profile(name="New Name", email="new@x.com")
        )

        assert second.id == first.id
        assert second.display_name == "New Name"
        assert second.email == "new@x.com"
        assert second.updated_at >= first.updated_at
        stored = await any_storage.find_user_by_id(first.id)
        assert stored.display_name == "New Name"


class TestCreateStorage:
    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sql_url(self, tmp_path):
        assert isinstance(create_storage(f"sqlite:///{tmp_path / 'x.db'}"), SQLStorage)
