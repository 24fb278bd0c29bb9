"""Service for issuing and verifying signed bearer tokens."""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from ..domain.clock import utcnow

logger = logging.getLogger(__name__)

REQUIRE_2FA_CLAIM = "require2FA"
_RESERVED_CLAIMS = {"sub", "exp", "iat", "jti", REQUIRE_2FA_CLAIM}


@dataclass(slots=True)
class TokenClaims:
    user_id: int
    require_2fa: bool
    expires_at: datetime
    extra: Dict[str, Any] = field(default_factory=dict)


class TokenService:
    """Signs and validates HS256 JWTs carrying identity and auth-level claims.

    The signing key is fixed at construction. Rotating it (a restart with a new
    key) invalidates every outstanding token.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        default_ttl: timedelta = timedelta(days=30),
        temp_ttl: timedelta = timedelta(minutes=5),
        algorithm: str = "HS256",
    ) -> None:
        if not secret_key:
            raise RuntimeError("JWT_SECRET is not configured.")
        if secret_key == "change-me":
            logger.warning("JWT_SECRET is using the default value. Configure a strong secret in production.")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.default_ttl = default_ttl
        self.temp_ttl = temp_ttl

    def issue(
        self,
        user_id: int,
        *,
        require_2fa: bool = False,
        ttl: Optional[timedelta] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Mint a signed token.

        Args:
            user_id: Subject of the token
            require_2fa: Mark the token as a pending-2FA temp token
            ttl: Lifetime, defaults to ``default_ttl``
            extra: Additional non-reserved claims to embed

        Returns:
            Encoded JWT string
        """
        now = utcnow()
        payload: Dict[str, Any] = {
            key: value for key, value in (extra or {}).items() if key not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "sub": str(user_id),
                "iat": now,
                "exp": now + (ttl or self.default_ttl),
                # Keeps tokens minted in the same second distinct.
                "jti": secrets.token_hex(8),
            }
        )
        if require_2fa:
            payload[REQUIRE_2FA_CLAIM] = True
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def issue_temp(self, user_id: int) -> str:
        return self.issue(user_id, require_2fa=True, ttl=self.temp_ttl)

    def verify(self, token: str) -> Optional[TokenClaims]:
        """Decode a token, returning None for anything that is not a valid, live token."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

        try:
            user_id = int(payload["sub"])
        except (TypeError, ValueError):
            return None

        return TokenClaims(
            user_id=user_id,
            require_2fa=bool(payload.get(REQUIRE_2FA_CLAIM, False)),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            extra={key: value for key, value in payload.items() if key not in _RESERVED_CLAIMS},
        )
