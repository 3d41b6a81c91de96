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
Server-side session lifecycle: create, validate, invalidate and cleanup.
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from .errors import SessionError
from .models import Session, User, utcnow
from .storage import Storage

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 32  # 256 bits, same floor as OAuth state
DEFAULT_TTL = timedelta(hours=24)
DEFAULT_CLEANUP_INTERVAL = 3600.0


def generate_session_id() -> str:
    return secrets.token_urlsafe(SESSION_ID_BYTES)


class SessionManager:
    """
    Issues and checks server-side sessions through the storage collaborator.

    Validation is fail-closed: any storage failure means "not authenticated".
    """

    def __init__(
        self,
        storage: Storage,
        ttl: timedelta = DEFAULT_TTL,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        if ttl <= timedelta(0):
            raise ValueError("Session ttl must be positive")
        self.storage = storage
        self.ttl = ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._last_cleanup = time.monotonic()
        self._cleanup_task: Optional[asyncio.Task] = None

    async def create(self, user_id: str) -> Session:
        """
        Create and persist a session for a user.

        Raises:
            SessionError: If the session could not be stored
        """
        now = self._clock()
        session = Session(
            session_id=generate_session_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        try:
            await self.storage.create_session(session)
        except Exception as e:
            logger.error(f"Failed to create session for user {user_id}: {e}")
            raise SessionError(
                "Failed to create session", details={"user_id": user_id}
            ) from e
        logger.info(f"Created session for user {user_id}, expires {session.expires_at.isoformat()}")
        return session

    async def validate(self, session_id: Optional[str]) -> Optional[User]:
        """Resolve the user owning a live session, or None when the session is not valid."""
        if not session_id:
            return None
        try:
            session = await self.storage.find_session(session_id)
            if session is None:
                return None
            if session.is_expired(self._clock()):
                logger.info(f"Session for user {session.user_id} expired, removing")
                await self.storage.delete_session(session_id)
                return None
            user = await self.storage.find_user_by_id(session.user_id)
            if user is None:
                logger.warning(f"Session references missing user {session.user_id}, removing")
                await self.storage.delete_session(session_id)
                return None
            return user
        except Exception as e:
            logger.error(f"Session validation failed, treating as unauthenticated: {e}")
            return None

    async def invalidate(self, session_id: Optional[str]) -> None:
        """Delete a session. Unknown or missing ids are not an error."""
        if not session_id:
            return
        try:
            await self.storage.delete_session(session_id)
        except Exception as e:
            raise SessionError("Failed to invalidate session") from e

    async def cleanup_expired(self) -> int:
        """Bulk-delete sessions whose expiry has passed. Returns the number removed."""
        now = self._clock()
        count = await self.storage.delete_expired_sessions(now)
        self._last_cleanup = time.monotonic()
        if count:
            logger.info(f"Cleaned up {count} expired sessions")
        return count

    def maybe_cleanup(self) -> Optional[asyncio.Task]:
        """Dispatch a background cleanup if the interval has passed since the last one."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return None
        if time.monotonic() - self._last_cleanup < self.cleanup_interval:
            return None
        self._last_cleanup = time.monotonic()
        self._cleanup_task = asyncio.create_task(self._background_cleanup())
        return self._cleanup_task

    async def _background_cleanup(self) -> None:
        try:
            await self.cleanup_expired()
        except Exception as e:
            logger.error(f"Opportunistic session cleanup failed: {e}")


class SessionCleanupTask:
    """Periodic cleanup of expired sessions on its own asyncio task."""

    def __init__(self, manager: SessionManager, interval: float = DEFAULT_CLEANUP_INTERVAL):
        self.manager = manager
        self.interval = interval
        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Run one cleanup pass. Failures are logged and counted, never raised."""
        self.runs += 1
        try:
            return await self.manager.cleanup_expired()
        except Exception as e:
            self.failures += 1
            logger.error(f"Scheduled session cleanup failed: {e}")
            return 0

    async def _loop(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Session cleanup scheduled every {self.interval:.0f}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stopping is not None:
            self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info("Session cleanup stopped")
