import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from ...domain.clock import utcnow
from ...domain.errors import ConstraintViolationError, RecordNotFoundError
from ...domain.models import Session, SocialConnection, SocialProvider, User
from ...domain.ports.persistence import PersistenceGateway, check_user_changes


class InMemoryPersistence(PersistenceGateway):
    """Process-local, non-durable implementation of the persistence gateway.

    Intended for tests and single-instance development. Records are copied on
    the way in and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: Dict[int, User] = {}
        self._sessions: Dict[int, Session] = {}
        self._connections: Dict[int, SocialConnection] = {}
        self._user_ids = itertools.count(1)
        self._session_ids = itertools.count(1)
        self._connection_ids = itertools.count(1)

    async def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._users.clear()
            self._sessions.clear()
            self._connections.clear()

    # UserRepository API -----------------------------------------------------
    async def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
        return replace(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user(lambda u: u.email.casefold() == email.casefold())

    async def get_user_by_username(self, username: str) -> Optional[User]:
        return self._find_user(lambda u: u.username.casefold() == username.casefold())

    async def get_user_by_verification_token(self, token: str) -> Optional[User]:
        return self._find_user(lambda u: u.verification_token == token)

    async def get_user_by_reset_token(self, token: str) -> Optional[User]:
        now = utcnow()
        return self._find_user(
            lambda u: u.reset_password_token == token
            and u.reset_password_expires_at is not None
            and u.reset_password_expires_at > now
        )

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
        now = utcnow()
        with self._lock:
            self._check_user_unique(email=email, username=username)
            user = User(
                id=next(self._user_ids),
                email=email,
                username=username,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                is_verified=is_verified,
                verification_token=verification_token,
                verification_expires_at=verification_expires_at,
                profile_picture=profile_picture,
                created_at=now,
                updated_at=now,
            )
            self._users[user.id] = user
        return replace(user)

    async def update_user(self, user_id: int, **changes: Any) -> User:
        check_user_changes(changes)
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise RecordNotFoundError("User", user_id)
            self._check_user_unique(
                email=changes.get("email"),
                username=changes.get("username"),
                exclude_id=user_id,
            )
            updated = replace(user, **changes, updated_at=utcnow())
            self._users[user_id] = updated
        return replace(updated)

    async def delete_user(self, user_id: int) -> bool:
        with self._lock:
            return self._users.pop(user_id, None) is not None

    async def claim_totp_step(self, user_id: int, step: int) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            if user.two_factor_last_step is not None and user.two_factor_last_step >= step:
                return False
            self._users[user_id] = replace(user, two_factor_last_step=step, updated_at=utcnow())
        return True

    # SessionRepository API --------------------------------------------------
    async def get_session(self, session_id: int) -> Optional[Session]:
        now = utcnow()
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or not session.is_active(now):
            return None
        return replace(session)

    async def get_session_by_token(self, token: str) -> Optional[Session]:
        now = utcnow()
        with self._lock:
            for session in self._sessions.values():
                if session.token == token and session.is_active(now):
                    return replace(session)
        return None

    async def get_user_sessions(self, user_id: int) -> List[Session]:
        now = utcnow()
        with self._lock:
            sessions = [
                replace(session)
                for session in self._sessions.values()
                if session.user_id == user_id and session.is_active(now)
            ]
        return sorted(sessions, key=lambda s: (s.created_at, s.id), reverse=True)

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
        with self._lock:
            if any(s.token == token for s in self._sessions.values()):
                raise ConstraintViolationError("session.token")
            session = Session(
                id=next(self._session_ids),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                created_at=utcnow(),
                ip_address=ip_address,
                user_agent=user_agent,
                location=location,
                timezone=timezone,
            )
            self._sessions[session.id] = session
        return replace(session)

    async def delete_session(self, session_id: int) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def delete_user_sessions(self, user_id: int, except_token: Optional[str] = None) -> bool:
        with self._lock:
            doomed = [
                s.id
                for s in self._sessions.values()
                if s.user_id == user_id and s.token != except_token
            ]
            for session_id in doomed:
                del self._sessions[session_id]
        return bool(doomed)

    async def purge_expired_sessions(self, now: datetime) -> int:
        with self._lock:
            expired = [s.id for s in self._sessions.values() if not s.is_active(now)]
            for session_id in expired:
                del self._sessions[session_id]
        return len(expired)

    # SocialConnectionRepository API -----------------------------------------
    async def get_social_connection(
        self, user_id: int, provider: SocialProvider
    ) -> Optional[SocialConnection]:
        provider = SocialProvider(provider)
        return self._find_connection(lambda c: c.user_id == user_id and c.provider == provider)

    async def get_social_connection_by_provider_id(
        self, provider: SocialProvider, provider_id: str
    ) -> Optional[SocialConnection]:
        provider = SocialProvider(provider)
        return self._find_connection(
            lambda c: c.provider == provider and c.provider_id == provider_id
        )

    async def create_social_connection(
        self,
        *,
        user_id: int,
        provider: SocialProvider,
        provider_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> SocialConnection:
        provider = SocialProvider(provider)
        now = utcnow()
        with self._lock:
            for existing in self._connections.values():
                if existing.user_id == user_id and existing.provider == provider:
                    raise ConstraintViolationError("social_connection.user_provider")
                if existing.provider == provider and existing.provider_id == provider_id:
                    raise ConstraintViolationError("social_connection.provider_id")
            connection = SocialConnection(
                id=next(self._connection_ids),
                user_id=user_id,
                provider=provider,
                provider_id=provider_id,
                data=dict(data or {}),
                created_at=now,
                updated_at=now,
            )
            self._connections[connection.id] = connection
        return replace(connection)

    async def delete_social_connection(self, connection_id: int) -> bool:
        with self._lock:
            return self._connections.pop(connection_id, None) is not None

    async def get_user_social_connections(self, user_id: int) -> List[SocialConnection]:
        with self._lock:
            return [replace(c) for c in self._connections.values() if c.user_id == user_id]

    # Helpers ----------------------------------------------------------------
    def _find_user(self, predicate) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if predicate(user):
                    return replace(user)
        return None

    def _find_connection(self, predicate) -> Optional[SocialConnection]:
        with self._lock:
            for connection in self._connections.values():
                if predicate(connection):
                    return replace(connection)
        return None

    def _check_user_unique(
        self,
        *,
        email: Optional[str],
        username: Optional[str],
        exclude_id: Optional[int] = None,
    ) -> None:
        # Caller holds the lock.
        for user in self._users.values():
            if user.id == exclude_id:
                continue
            if email is not None and user.email.casefold() == email.casefold():
                raise ConstraintViolationError("user.email")
            if username is not None and user.username.casefold() == username.casefold():
                raise ConstraintViolationError("user.username")
