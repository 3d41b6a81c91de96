#!/usr/bin/env python3
# MIT License
#
# Copyright (c) 2025 SSO Web App Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Storage collaborator for users and sessions.

``Storage`` is the contract the core consumes. ``SQLStorage`` persists to any
SQLAlchemy database (sqlite by default) and runs its blocking work in the
default executor; ``InMemoryStorage`` backs tests and local development.
Every failure surfaces as StorageError, classified as DATABASE.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional, Protocol, TypeVar

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import StorageError
from .models import NormalizedProfile, Provider, Session, User, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Storage(Protocol):
    """Operations the authentication core needs from persistent storage."""

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...

    async def create_user(self, profile: NormalizedProfile) -> User: ...

    async def find_user_by_provider_id(
        self, provider: Provider, provider_user_id: str
    ) -> Optional[User]: ...

    async def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    async def update_user(self, user: User) -> User: ...

    async def create_session(self, session: Session) -> Session: ...

    async def find_session(self, session_id: str) -> Optional[Session]: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def delete_expired_sessions(self, now: datetime) -> int: ...


def new_user_id() -> str:
    return str(uuid.uuid4())


async def create_or_update_user(storage: Storage, profile: NormalizedProfile) -> User:
    """Upsert the user identified by (provider, provider_user_id) from a fresh profile."""
    existing = await storage.find_user_by_provider_id(profile.provider, profile.provider_user_id)
    if existing is None:
        try:
            user = await storage.create_user(profile)
            logger.info(f"Created user {user.id} for {profile.provider.value}")
            return user
        except StorageError:
            # Lost a race against a concurrent first login for the same identity
            existing = await storage.find_user_by_provider_id(
                profile.provider, profile.provider_user_id
            )
            if existing is None:
                raise
    return await storage.update_user(existing.with_profile(profile))


class InMemoryStorage:
    """Dictionary-backed storage. Each method is a single atomic step on the event loop."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.sessions: dict[str, Session] = {}
        self._by_identity: dict[tuple[Provider, str], str] = {}

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def create_user(self, profile: NormalizedProfile) -> User:
        key = (profile.provider, profile.provider_user_id)
        if key in self._by_identity:
            raise StorageError(
                "User already exists for provider identity",
                details={"provider": profile.provider.value},
            )
        now = utcnow()
        user = User(
            id=new_user_id(),
            provider=profile.provider,
            provider_user_id=profile.provider_user_id,
            display_name=profile.display_name,
            email=profile.email,
            created_at=now,
            updated_at=now,
        )
        self.users[user.id] = user
        self._by_identity[key] = user.id
        return user

    async def find_user_by_provider_id(
        self, provider: Provider, provider_user_id: str
    ) -> Optional[User]:
        user_id = self._by_identity.get((provider, provider_user_id))
        return self.users.get(user_id) if user_id else None

    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def update_user(self, user: User) -> User:
        if user.id not in self.users:
            raise StorageError("Cannot update unknown user", details={"user_id": user.id})
        self.users[user.id] = user
        return user

    async def delete_user(self, user_id: str) -> bool:
        user = self.users.pop(user_id, None)
        if user is None:
            return False
        self._by_identity.pop((user.provider, user.provider_user_id), None)
        return True

    async def create_session(self, session: Session) -> Session:
        if session.session_id in self.sessions:
            raise StorageError("Session id collision")
        self.sessions[session.session_id] = session
        return session

    async def find_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    async def delete_session(self, session_id: str) -> bool:
        return self.sessions.pop(session_id, None) is not None

    async def delete_expired_sessions(self, now: datetime) -> int:
        expired = [sid for sid, s in self.sessions.items() if s.expires_at < now]
        for sid in expired:
            self.sessions.pop(sid, None)
        return len(expired)


metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("provider", String(32), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("email", String(320), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_users_provider_identity"),
)

sessions_table = Table(
    "sessions",
    metadata,
    Column("session_id", String(128), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Index("idx_sessions_expires", "expires_at"),
)


def _aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        provider=Provider(row.provider),
        provider_user_id=row.provider_user_id,
        display_name=row.display_name,
        email=row.email,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        session_id=row.session_id,
        user_id=row.user_id,
        created_at=_aware(row.created_at),
        expires_at=_aware(row.expires_at),
    )


class SQLStorage:
    """SQLAlchemy Core storage. Each method runs one transaction in the executor."""

    def __init__(self, database_url: str, engine: Optional[Engine] = None):
        self.database_url = database_url
        self.engine = engine or create_engine(database_url)

    async def _run(self, operation: str, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func)
        except SQLAlchemyError as e:
            logger.error(f"Storage operation {operation} failed: {type(e).__name__}: {e}")
            raise StorageError(
                f"Storage operation {operation} failed", details={"operation": operation}
            ) from e

    async def initialize(self) -> None:
        await self._run("initialize", lambda: metadata.create_all(self.engine))
        logger.info("Storage schema initialized")

    async def close(self) -> None:
        await self._run("close", self.engine.dispose)

    async def ping(self) -> bool:
        def _ping() -> bool:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True

        return await self._run("ping", _ping)

    async def create_user(self, profile: NormalizedProfile) -> User:
        now = utcnow()
        user = User(
            id=new_user_id(),
            provider=profile.provider,
            provider_user_id=profile.provider_user_id,
            display_name=profile.display_name,
            email=profile.email,
            created_at=now,
            updated_at=now,
        )

        def _create() -> User:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(users_table).values(
                        id=user.id,
                        provider=user.provider.value,
                        provider_user_id=user.provider_user_id,
                        display_name=user.display_name,
                        email=user.email,
                        created_at=user.created_at,
                        updated_at=user.updated_at,
                    )
                )
            return user

        try:
            return await self._run("create_user", _create)
        except StorageError as e:
            if isinstance(e.__cause__, IntegrityError):
                e.details["conflict"] = True
            raise

    async def find_user_by_provider_id(
        self, provider: Provider, provider_user_id: str
    ) -> Optional[User]:
        def _find() -> Optional[User]:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(users_table).where(
                        users_table.c.provider == provider.value,
                        users_table.c.provider_user_id == provider_user_id,
                    )
                ).first()
            return _row_to_user(row) if row else None

        return await self._run("find_user_by_provider_id", _find)

    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        def _find() -> Optional[User]:
            with self.engine.connect() as conn:
                row = conn.execute(select(users_table).where(users_table.c.id == user_id)).first()
            return _row_to_user(row) if row else None

        return await self._run("find_user_by_id", _find)

    async def update_user(self, user: User) -> User:
        def _update() -> User:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(users_table)
                    .where(users_table.c.id == user.id)
                    .values(
                        display_name=user.display_name,
                        email=user.email,
                        updated_at=user.updated_at,
                    )
                )
            if result.rowcount == 0:
                raise StorageError("Cannot update unknown user", details={"user_id": user.id})
            return user

        return await self._run("update_user", _update)

    async def create_session(self, session: Session) -> Session:
        def _create() -> Session:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(sessions_table).values(
                        session_id=session.session_id,
                        user_id=session.user_id,
                        created_at=session.created_at,
                        expires_at=session.expires_at,
                    )
                )
            return session

        return await self._run("create_session", _create)

    async def find_session(self, session_id: str) -> Optional[Session]:
        def _find() -> Optional[Session]:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(sessions_table).where(sessions_table.c.session_id == session_id)
                ).first()
            return _row_to_session(row) if row else None

        return await self._run("find_session", _find)

    async def delete_session(self, session_id: str) -> bool:
        def _delete() -> bool:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(sessions_table).where(sessions_table.c.session_id == session_id)
                )
            return result.rowcount > 0

        return await self._run("delete_session", _delete)

    async def delete_expired_sessions(self, now: datetime) -> int:
        def _delete() -> int:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(sessions_table).where(sessions_table.c.expires_at < now)
                )
            return result.rowcount

        return await self._run("delete_expired_sessions", _delete)


def create_storage(database_url: str) -> Storage:
    """Storage for a database URL; ``memory://`` selects the in-process store."""
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    return SQLStorage(database_url)
