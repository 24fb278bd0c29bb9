from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Protocol

from ..models import Session, SocialConnection, SocialProvider, User

# Columns a partial user patch may touch. ``id`` and ``created_at`` are immutable.
USER_MUTABLE_FIELDS: FrozenSet[str] = frozenset(
    {
        "email",
        "username",
        "password_hash",
        "first_name",
        "last_name",
        "is_verified",
        "verification_token",
        "verification_expires_at",
        "reset_password_token",
        "reset_password_expires_at",
        "two_factor_enabled",
        "two_factor_secret",
        "two_factor_last_step",
        "profile_picture",
    }
)


class UserRepository(Protocol):
    """Persistence functions related to user accounts.

    Email and username lookups are case-insensitive. ``update_user`` merges the
    given fields onto the stored record and never derives other fields from
    them (changing the email leaves verification state alone).
    """

    async def get_user(self, user_id: int) -> Optional[User]:
        ...

    async def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    async def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    async def get_user_by_verification_token(self, token: str) -> Optional[User]:
        ...

    async def get_user_by_reset_token(self, token: str) -> Optional[User]:
        """Return the holder of an unexpired reset token."""
        ...

    async def create_user(
        self,
        *,
        email: str,
        username: str,
        password_hash: Optional[str],
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
        profile_picture: Optional[str] = None,
    ) -> User:
        ...

    async def update_user(self, user_id: int, **changes: Any) -> User:
        ...

    async def delete_user(self, user_id: int) -> bool:
        ...

    async def claim_totp_step(self, user_id: int, step: int) -> bool:
        """Atomically record ``step`` as the last accepted TOTP step.

        Returns False, leaving the record untouched, when a step at or after
        ``step`` was already recorded or the user does not exist.
        """
        ...


class SessionRepository(Protocol):
    """Persistence functions related to login sessions.

    Every read excludes sessions whose ``expires_at`` has passed.
    """

    async def get_session(self, session_id: int) -> Optional[Session]:
        ...

    async def get_session_by_token(self, token: str) -> Optional[Session]:
        ...

    async def get_user_sessions(self, user_id: int) -> List[Session]:
        ...

    async def create_session(
        self,
        *,
        user_id: int,
        token: str,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> Session:
        ...

    async def delete_session(self, session_id: int) -> bool:
        ...

    async def delete_user_sessions(self, user_id: int, except_token: Optional[str] = None) -> bool:
        """Remove the user's sessions, reporting whether any were removed."""
        ...

    async def purge_expired_sessions(self, now: datetime) -> int:
        ...


class SocialConnectionRepository(Protocol):
    """Persistence functions related to external identity links."""

    async def get_social_connection(
        self, user_id: int, provider: SocialProvider
    ) -> Optional[SocialConnection]:
        ...

    async def get_social_connection_by_provider_id(
        self, provider: SocialProvider, provider_id: str
    ) -> Optional[SocialConnection]:
        ...

    async def create_social_connection(
        self,
        *,
        user_id: int,
        provider: SocialProvider,
        provider_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> SocialConnection:
        ...

    async def delete_social_connection(self, connection_id: int) -> bool:
        ...

    async def get_user_social_connections(self, user_id: int) -> List[SocialConnection]:
        ...


class PersistenceGateway(
    UserRepository,
    SessionRepository,
    SocialConnectionRepository,
    Protocol,
):
    """Composite gateway combining every persistence concern used by the app."""

    async def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...


def check_user_changes(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - USER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown or immutable user fields: {', '.join(sorted(unknown))}")
