"""
Data models for the authentication core.

Separated from the service modules to avoid circular imports between
the orchestrator, the session manager and the storage implementations.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp in the core."""
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    """Supported OAuth2 identity providers."""

    MICROSOFT = "microsoft"
    GITHUB = "github"

    @classmethod
    def parse(cls, value: Any) -> Optional[Provider]:
        """Parse a provider name case-insensitively.

        Returns:
            The matching Provider, or None when the value names no supported provider
        """
        if isinstance(value, Provider):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class NormalizedProfile:
    """Provider-agnostic projection of a provider's user info.

    Attributes:
        provider: Identity provider the profile came from
        provider_user_id: Provider-assigned user id, always in string form
        display_name: Human readable name, never blank
        email: Optional email address
    """

    provider: Provider
    provider_user_id: str
    display_name: str
    email: Optional[str] = None


@dataclass
class User:
    """Identity record keyed by (provider, provider_user_id).

    Attributes:
        id: Opaque internal id, immutable once assigned
        provider: Identity provider
        provider_user_id: Provider-assigned user id
        display_name: Display name refreshed on every login
        email: Optional email refreshed on every login
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    id: str
    provider: Provider
    provider_user_id: str
    display_name: str
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def with_profile(self, profile: NormalizedProfile, now: Optional[datetime] = None) -> User:
        """Copy of this user carrying the mutable attributes of a fresh profile."""
        return replace(
            self,
            display_name=profile.display_name,
            email=profile.email,
            updated_at=now or utcnow(),
        )


@dataclass(frozen=True)
class Session:
    """Server-issued, time-bounded grant of access bound to one user."""

    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("Session expires_at must be after created_at")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
