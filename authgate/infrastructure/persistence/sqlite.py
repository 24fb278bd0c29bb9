import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ...domain.clock import utcnow
from ...domain.errors import (
    ConstraintViolationError,
    RecordNotFoundError,
    StorageError,
    StorageUnavailableError,
)
from ...domain.models import Session, SocialConnection, SocialProvider, User
from ...domain.ports.persistence import PersistenceGateway, check_user_changes


def _to_db(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC ISO strings so that SQL string comparison orders by time.
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _casefold_collation(left: str, right: str) -> int:
    # Full Unicode case folding; NOCASE only folds ASCII letters.
    a, b = left.casefold(), right.casefold()
    return (a > b) - (a < b)


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway.

    Uniqueness (Unicode case-insensitive email and username, session tokens,
    provider identities) is enforced by table constraints, so concurrent writers
    race on the database rather than on a read-then-insert in application code.
    """

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.create_collation("CASEFOLD", _casefold_collation)
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL COLLATE CASEFOLD UNIQUE,
                    username TEXT NOT NULL COLLATE CASEFOLD UNIQUE,
                    password_hash TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    verification_token TEXT,
                    verification_expires_at TEXT,
                    reset_password_token TEXT,
                    reset_password_expires_at TEXT,
                    two_factor_enabled INTEGER NOT NULL DEFAULT 0,
                    two_factor_secret TEXT,
                    two_factor_last_step INTEGER,
                    profile_picture TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_verification_token
                    ON users(verification_token);
                CREATE INDEX IF NOT EXISTS idx_users_reset_password_token
                    ON users(reset_password_token);

                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    token TEXT NOT NULL UNIQUE,
                    ip_address TEXT,
                    user_agent TEXT,
                    location TEXT,
                    timezone TEXT,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_user_expires
                    ON sessions(user_id, expires_at);

                CREATE TABLE IF NOT EXISTS social_connections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    provider TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    data TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(user_id, provider),
                    UNIQUE(provider, provider_id)
                );
                """
            )

    async def ping(self) -> bool:
        try:
            await self._fetchone("SELECT 1", ())
        except StorageError:
            return False
        return True

    def close(self) -> None:
        self._conn.close()

    # UserRepository API -----------------------------------------------------
    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE email = ?", (email,))
        return self._row_to_user(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE username = ?", (username,))
        return self._row_to_user(row) if row else None

    async def get_user_by_verification_token(self, token: str) -> Optional[User]:
        row = await self._fetchone(
            "SELECT * FROM users WHERE verification_token = ?", (token,)
        )
        return self._row_to_user(row) if row else None

    async def get_user_by_reset_token(self, token: str) -> Optional[User]:
        row = await self._fetchone(
            """
            SELECT * FROM users
            WHERE reset_password_token = ? AND reset_password_expires_at > ?
            """,
            (token, _to_db(utcnow())),
        )
        return self._row_to_user(row) if row else None

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
        now = _to_db(utcnow())
        user_id, _ = await self._write(
            """
            INSERT INTO users (
                email, username, password_hash, first_name, last_name, is_verified,
                verification_token, verification_expires_at, profile_picture,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                email,
                username,
                password_hash,
                first_name,
                last_name,
                int(is_verified),
                verification_token,
                _to_db(verification_expires_at),
                profile_picture,
                now,
                now,
            ),
        )
        user = await self.get_user(user_id)
        if user is None:  # pragma: no cover - row vanished between insert and read
            raise RecordNotFoundError("User", user_id)
        return user

    async def update_user(self, user_id: int, **changes: Any) -> User:
        check_user_changes(changes)
        columns = dict(changes)
        columns["updated_at"] = utcnow()
        assignments = ", ".join(f"{name} = ?" for name in columns)
        values = [self._to_column(value) for value in columns.values()]
        _, rowcount = await self._write(
            f"UPDATE users SET {assignments} WHERE id = ?",
            (*values, user_id),
        )
        if rowcount == 0:
            raise RecordNotFoundError("User", user_id)
        user = await self.get_user(user_id)
        if user is None:  # pragma: no cover - row vanished between update and read
            raise RecordNotFoundError("User", user_id)
        return user

    async def delete_user(self, user_id: int) -> bool:
        _, rowcount = await self._write("DELETE FROM users WHERE id = ?", (user_id,))
        return rowcount > 0

    async def claim_totp_step(self, user_id: int, step: int) -> bool:
        _, rowcount = await self._write(
            """
            UPDATE users SET two_factor_last_step = ?, updated_at = ?
            WHERE id = ? AND (two_factor_last_step IS NULL OR two_factor_last_step < ?)
            """,
            (step, _to_db(utcnow()), user_id, step),
        )
        return rowcount > 0

    # SessionRepository API --------------------------------------------------
    async def get_session(self, session_id: int) -> Optional[Session]:
        row = await self._fetchone(
            "SELECT * FROM sessions WHERE id = ? AND expires_at > ?",
            (session_id, _to_db(utcnow())),
        )
        return self._row_to_session(row) if row else None

    async def get_session_by_token(self, token: str) -> Optional[Session]:
        row = await self._fetchone(
            "SELECT * FROM sessions WHERE token = ? AND expires_at > ?",
            (token, _to_db(utcnow())),
        )
        return self._row_to_session(row) if row else None

    async def get_user_sessions(self, user_id: int) -> List[Session]:
        rows = await self._fetchall(
            """
            SELECT * FROM sessions
            WHERE user_id = ? AND expires_at > ?
            ORDER BY created_at DESC, id DESC
            """,
            (user_id, _to_db(utcnow())),
        )
        return [self._row_to_session(row) for row in rows]

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
        created_at = utcnow()
        session_id, _ = await self._write(
            """
            INSERT INTO sessions (
                user_id, token, ip_address, user_agent, location, timezone,
                expires_at, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                token,
                ip_address,
                user_agent,
                location,
                timezone,
                _to_db(expires_at),
                _to_db(created_at),
            ),
        )
        return Session(
            id=session_id,
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            created_at=created_at,
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
            timezone=timezone,
        )

    async def delete_session(self, session_id: int) -> bool:
        _, rowcount = await self._write("DELETE FROM sessions WHERE id = ?", (session_id,))
        return rowcount > 0

    async def delete_user_sessions(self, user_id: int, except_token: Optional[str] = None) -> bool:
        if except_token is None:
            _, rowcount = await self._write(
                "DELETE FROM sessions WHERE user_id = ?", (user_id,)
            )
        else:
            _, rowcount = await self._write(
                "DELETE FROM sessions WHERE user_id = ? AND token != ?",
                (user_id, except_token),
            )
        return rowcount > 0

    async def purge_expired_sessions(self, now: datetime) -> int:
        _, rowcount = await self._write(
            "DELETE FROM sessions WHERE expires_at <= ?", (_to_db(now),)
        )
        return rowcount

    # SocialConnectionRepository API -----------------------------------------
    async def get_social_connection(
        self, user_id: int, provider: SocialProvider
    ) -> Optional[SocialConnection]:
        row = await self._fetchone(
            "SELECT * FROM social_connections WHERE user_id = ? AND provider = ?",
            (user_id, SocialProvider(provider).value),
        )
        return self._row_to_connection(row) if row else None

    async def get_social_connection_by_provider_id(
        self, provider: SocialProvider, provider_id: str
    ) -> Optional[SocialConnection]:
        row = await self._fetchone(
            "SELECT * FROM social_connections WHERE provider = ? AND provider_id = ?",
            (SocialProvider(provider).value, provider_id),
        )
        return self._row_to_connection(row) if row else None

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
        payload = json.dumps(data or {}, default=str, ensure_ascii=False)
        connection_id, _ = await self._write(
            """
            INSERT INTO social_connections (
                user_id, provider, provider_id, data, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, provider.value, provider_id, payload, _to_db(now), _to_db(now)),
        )
        return SocialConnection(
            id=connection_id,
            user_id=user_id,
            provider=provider,
            provider_id=provider_id,
            data=json.loads(payload),
            created_at=now,
            updated_at=now,
        )

    async def delete_social_connection(self, connection_id: int) -> bool:
        _, rowcount = await self._write(
            "DELETE FROM social_connections WHERE id = ?", (connection_id,)
        )
        return rowcount > 0

    async def get_user_social_connections(self, user_id: int) -> List[SocialConnection]:
        rows = await self._fetchall(
            "SELECT * FROM social_connections WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
        return [self._row_to_connection(row) for row in rows]

    # Query plumbing ---------------------------------------------------------
    async def _fetchone(self, sql: str, params: Sequence[Any]) -> Optional[sqlite3.Row]:
        return await asyncio.to_thread(self._fetchone_sync, sql, params)

    async def _fetchall(self, sql: str, params: Sequence[Any]) -> List[sqlite3.Row]:
        return await asyncio.to_thread(self._fetchall_sync, sql, params)

    async def _write(self, sql: str, params: Sequence[Any]) -> Tuple[int, int]:
        return await asyncio.to_thread(self._write_sync, sql, params)

    def _fetchone_sync(self, sql: str, params: Sequence[Any]) -> Optional[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, tuple(params)).fetchone()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(str(exc)) from exc

    def _fetchall_sync(self, sql: str, params: Sequence[Any]) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(str(exc)) from exc

    def _write_sync(self, sql: str, params: Sequence[Any]) -> Tuple[int, int]:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(sql, tuple(params))
                return cursor.lastrowid or 0, cursor.rowcount
        except sqlite3.IntegrityError as exc:
            # "UNIQUE constraint failed: users.email"
            message = str(exc)
            field = message.split(":", 1)[1].strip() if ":" in message else message
            raise ConstraintViolationError(field) from exc
        except sqlite3.Error as exc:
            raise StorageUnavailableError(str(exc)) from exc

    @staticmethod
    def _to_column(value: Any) -> Any:
        if isinstance(value, datetime):
            return _to_db(value)
        if isinstance(value, bool):
            return int(value)
        return value

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            is_verified=bool(row["is_verified"]),
            verification_token=row["verification_token"],
            verification_expires_at=_from_db(row["verification_expires_at"]),
            reset_password_token=row["reset_password_token"],
            reset_password_expires_at=_from_db(row["reset_password_expires_at"]),
            two_factor_enabled=bool(row["two_factor_enabled"]),
            two_factor_secret=row["two_factor_secret"],
            two_factor_last_step=row["two_factor_last_step"],
            profile_picture=row["profile_picture"],
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            location=row["location"],
            timezone=row["timezone"],
            expires_at=_from_db(row["expires_at"]),
            created_at=_from_db(row["created_at"]),
        )

    def _row_to_connection(self, row: sqlite3.Row) -> SocialConnection:
        return SocialConnection(
            id=row["id"],
            user_id=row["user_id"],
            provider=SocialProvider(row["provider"]),
            provider_id=row["provider_id"],
            data=json.loads(row["data"] or "{}"),
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )
