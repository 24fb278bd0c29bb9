from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Dict, List, Optional, Set

from ...domain.clock import utcnow
from ...domain.errors import (
    BadRequestError,
    ConflictError,
    ConstraintViolationError,
    DeliveryError,
    ForbiddenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    UnauthorizedError,
    UnverifiedError,
    ValidationError,
)
from ...domain.models import ClientInfo, Session, SocialProvider, User
from ...domain.ports.persistence import PersistenceGateway
from ...services.email_service import AccountMailer
from ...services.password_hasher import PasswordHasher
from ...services.token_service import TokenClaims, TokenService
from ...services.totp_service import TotpService

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If your email is registered, you will receive a password reset link"
RESEND_REQUESTED_MESSAGE = "If your email is registered and unverified, a new verification link has been sent"
PROFILE_FIELDS = frozenset({"first_name", "last_name", "username", "profile_picture"})
_USERNAME_ATTEMPTS = 5


@dataclass(slots=True)
class Principal:
    """The caller behind a bearer token, resolved by ``AuthService.authenticate``."""

    user: User
    claims: TokenClaims
    token: str
    session: Optional[Session] = None


def _new_secret_token() -> str:
    return secrets.token_hex(32)


def _conflict_from(exc: ConstraintViolationError) -> ConflictError:
    if "email" in exc.field:
        return ConflictError("Email already in use")
    if "username" in exc.field:
        return ConflictError("Username already in use")
    return ConflictError("This social account is already linked")


class AuthService:
    """Account lifecycle: registration, login, verification, recovery, 2FA and sessions.

    Holds no per-request state; everything mutable lives behind the
    persistence gateway. Email side effects that must not fail the caller
    (login notifications, welcome and confirmation mails) run as background
    tasks tracked by the service so they can be drained on shutdown.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        hasher: PasswordHasher,
        tokens: TokenService,
        totp: TotpService,
        mailer: AccountMailer,
        *,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        revoke_sessions_on_password_change: bool = False,
    ) -> None:
        self._store = persistence
        self._hasher = hasher
        self._tokens = tokens
        self._totp = totp
        self._mailer = mailer
        self._verification_ttl = verification_ttl
        self._reset_ttl = reset_ttl
        self._revoke_on_password_change = revoke_sessions_on_password_change
        self._background: Set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------
    async def register(
        self,
        email: str,
        username: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = email.strip().lower()
        username = username.strip()
        if await self._store.get_user_by_email(email):
            raise ConflictError("Email already in use")
        if await self._store.get_user_by_username(username):
            raise ConflictError("Username already in use")

        password_hash = await self._hasher.hash(password)
        verification_token = _new_secret_token()
        try:
            user = await self._store.create_user(
                email=email,
                username=username,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                is_verified=False,
                verification_token=verification_token,
                verification_expires_at=utcnow() + self._verification_ttl,
            )
        except ConstraintViolationError as exc:
            # Lost a race with a concurrent registration.
            raise _conflict_from(exc) from exc

        logger.info("Registered user %s", user.id)
        await self._deliver(self._mailer.send_verification_email(user.email, verification_token))
        return user.to_public()

    async def verify_email(self, token: str) -> Dict[str, Any]:
        user = await self._store.get_user_by_verification_token(token) if token else None
        if not user:
            raise InvalidTokenError("Invalid or expired verification token")
        if user.verification_expires_at and user.verification_expires_at < utcnow():
            raise InvalidTokenError("Verification token has expired")

        await self._store.update_user(
            user.id,
            is_verified=True,
            verification_token=None,
            verification_expires_at=None,
        )
        logger.info("Verified email for user %s", user.id)
        self._spawn(self._mailer.send_welcome_email(user.email, user.display_name))
        return {"success": True, "message": "Email verified successfully"}

    async def resend_verification(self, email: str) -> Dict[str, Any]:
        user = await self._store.get_user_by_email(email.strip())
        if user and not user.is_verified:
            token = _new_secret_token()
            await self._store.update_user(
                user.id,
                verification_token=token,
                verification_expires_at=utcnow() + self._verification_ttl,
            )
            try:
                await self._mailer.send_verification_email(user.email, token)
            except DeliveryError:
                logger.exception("Failed to resend verification email for user %s", user.id)
        return {"success": True, "message": RESEND_REQUESTED_MESSAGE}

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------
    async def login(
        self, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> Dict[str, Any]:
        user = await self._store.get_user_by_email(email.strip())
        # Unknown emails still pay for a bcrypt check so timing matches a wrong password.
        password_ok = await self._hasher.verify(password, user.password_hash if user else None)
        if not user or not password_ok:
            raise InvalidCredentialsError()
        if not user.is_verified:
            raise UnverifiedError()

        if user.two_factor_enabled:
            logger.info("Login for user %s awaiting two-factor code", user.id)
            return {"requiresTwoFactor": True, "tempToken": self._tokens.issue_temp(user.id)}

        return await self._start_session(user, client)

    async def validate_two_factor(
        self, temp_token: str, code: str, client: Optional[ClientInfo] = None
    ) -> Dict[str, Any]:
        claims = self._tokens.verify(temp_token) if temp_token else None
        if not claims or not claims.require_2fa:
            raise UnauthorizedError()

        user = await self._store.get_user(claims.user_id)
        if not user or not user.two_factor_enabled or not user.two_factor_secret:
            raise BadRequestError("2FA is not enabled for this user")

        await self._consume_code(user, code)
        return await self._start_session(user, client)

    async def authenticate(
        self, token: str, *, require_full: bool = True, require_session: bool = True
    ) -> Principal:
        """
        Resolve a bearer token to the calling user.

        Args:
            token: Raw bearer token
            require_full: Reject tokens still waiting on a 2FA code
            require_session: Require a live session bound to the token

        Raises:
            UnauthorizedError: Token invalid, session gone or user missing
            ForbiddenError: Token is a pending-2FA temp token
        """
        claims = self._tokens.verify(token) if token else None
        if not claims:
            raise UnauthorizedError()
        if require_full and claims.require_2fa:
            raise ForbiddenError()

        session = None
        if require_session:
            session = await self._store.get_session_by_token(token)
            if not session:
                raise UnauthorizedError("Session expired or invalid")

        user = await self._store.get_user(claims.user_id)
        if not user:
            raise UnauthorizedError()
        return Principal(user=user, claims=claims, token=token, session=session)

    # ------------------------------------------------------------------
    # Password recovery and credential changes
    # ------------------------------------------------------------------
    async def request_password_reset(self, email: str) -> Dict[str, Any]:
        user = await self._store.get_user_by_email(email.strip())
        if user:
            token = _new_secret_token()
            await self._store.update_user(
                user.id,
                reset_password_token=token,
                reset_password_expires_at=utcnow() + self._reset_ttl,
            )
            try:
                await self._mailer.send_password_reset_email(user.email, token)
            except DeliveryError:
                # Surfacing this would reveal that the address is registered.
                logger.exception("Failed to send password reset email for user %s", user.id)
        return {"success": True, "message": RESET_REQUESTED_MESSAGE}

    async def reset_password(self, token: str, new_password: str) -> Dict[str, Any]:
        user = await self._store.get_user_by_reset_token(token) if token else None
        if not user:
            raise InvalidTokenError("Invalid or expired reset token")

        password_hash = await self._hasher.hash(new_password)
        await self._store.update_user(
            user.id,
            password_hash=password_hash,
            reset_password_token=None,
            reset_password_expires_at=None,
        )
        if self._revoke_on_password_change:
            await self._store.delete_user_sessions(user.id)
        logger.info("Password reset for user %s", user.id)
        return {"success": True, "message": "Password reset successfully"}

    async def change_email(self, user_id: int, new_email: str, password: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        if not await self._hasher.verify(password, user.password_hash):
            raise InvalidCredentialsError("Invalid password")

        new_email = new_email.strip().lower()
        existing = await self._store.get_user_by_email(new_email)
        if existing and existing.id != user.id:
            raise ConflictError("Email already in use")

        token = _new_secret_token()
        try:
            await self._store.update_user(
                user.id,
                email=new_email,
                is_verified=False,
                verification_token=token,
                verification_expires_at=utcnow() + self._verification_ttl,
            )
        except ConstraintViolationError as exc:
            raise _conflict_from(exc) from exc

        logger.info("Email changed for user %s; verification required", user.id)
        self._spawn(self._mailer.send_email_change_notice(user.email, new_email))
        await self._deliver(self._mailer.send_verification_email(new_email, token))
        return {"success": True, "message": "Email updated. Please verify your new email address"}

    async def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        current_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        if not await self._hasher.verify(current_password, user.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")

        password_hash = await self._hasher.hash(new_password)
        await self._store.update_user(user.id, password_hash=password_hash)
        if self._revoke_on_password_change:
            await self._store.delete_user_sessions(user.id, except_token=current_token)
        logger.info("Password changed for user %s", user.id)
        self._spawn(self._mailer.send_password_change_notice(user.email))
        return {"success": True, "message": "Password changed successfully"}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def logout(self, token: str) -> Dict[str, Any]:
        session = await self._store.get_session_by_token(token)
        if session:
            await self._store.delete_session(session.id)
        return {"success": True}

    async def logout_all_devices(self, user_id: int) -> Dict[str, Any]:
        removed = await self._store.delete_user_sessions(user_id)
        logger.info("Logged out all devices for user %s (removed=%s)", user_id, removed)
        return {"success": True}

    async def get_user_sessions(
        self, user_id: int, current_token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sessions = await self._store.get_user_sessions(user_id)
        result = []
        for session in sessions:
            item = session.to_public()
            item["current"] = current_token is not None and session.token == current_token
            result.append(item)
        return result

    async def revoke_session(self, user_id: int, session_id: int) -> Dict[str, Any]:
        session = await self._store.get_session(session_id)
        if not session or session.user_id != user_id:
            raise NotFoundError("Session not found")
        await self._store.delete_session(session.id)
        return {"success": True}

    # ------------------------------------------------------------------
    # Two-factor authentication
    # ------------------------------------------------------------------
    async def setup_two_factor(self, user_id: int) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        generated = self._totp.generate_secret(user.email)
        # Overwrites any unfinished setup. 2FA stays off until a code is verified.
        await self._store.update_user(
            user.id,
            two_factor_secret=generated.secret,
            two_factor_last_step=None,
        )
        return {"secret": generated.secret, "qrCodeUrl": generated.provisioning_uri}

    async def verify_and_enable_two_factor(self, user_id: int, code: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        if not user.two_factor_secret:
            raise BadRequestError("2FA setup not initiated")

        await self._consume_code(user, code)
        await self._store.update_user(user.id, two_factor_enabled=True)
        logger.info("Two-factor authentication enabled for user %s", user.id)
        return {"success": True, "message": "Two-factor authentication enabled successfully"}

    async def disable_two_factor(self, user_id: int, code: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise BadRequestError("2FA is not enabled")

        await self._consume_code(user, code)
        await self._store.update_user(
            user.id,
            two_factor_enabled=False,
            two_factor_secret=None,
            two_factor_last_step=None,
        )
        logger.info("Two-factor authentication disabled for user %s", user.id)
        return {"success": True, "message": "Two-factor authentication disabled successfully"}

    # ------------------------------------------------------------------
    # Profile and social connections
    # ------------------------------------------------------------------
    async def get_user_profile(self, user_id: int) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        connections = await self._store.get_user_social_connections(user.id)
        profile = user.to_public()
        profile["socialConnections"] = [c.provider.value for c in connections]
        return profile

    async def update_profile(self, user_id: int, **changes: Any) -> Dict[str, Any]:
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(
                "Validation failed",
                {name: ["Field cannot be updated"] for name in sorted(unknown)},
            )
        if not changes:
            return (await self._require_user(user_id)).to_public()

        if "username" in changes and not changes["username"]:
            raise ValidationError("Validation failed", {"username": ["Username cannot be empty"]})
        username = changes.get("username")
        if username:
            existing = await self._store.get_user_by_username(username)
            if existing and existing.id != user_id:
                raise ConflictError("Username is already taken")

        await self._require_user(user_id)
        try:
            user = await self._store.update_user(user_id, **changes)
        except ConstraintViolationError as exc:
            raise ConflictError("Username is already taken") from exc
        return user.to_public()

    async def unlink_social_connection(self, user_id: int, provider: str) -> Dict[str, Any]:
        provider_enum = self._parse_provider(provider)
        user = await self._require_user(user_id)
        connection = await self._store.get_social_connection(user.id, provider_enum)
        if not connection:
            raise NotFoundError(f"No {provider_enum.value} account is linked")

        if not user.password_hash:
            others = await self._store.get_user_social_connections(user.id)
            if len(others) <= 1:
                raise BadRequestError("Cannot unlink the only sign-in method for this account")

        await self._store.delete_social_connection(connection.id)
        return {"success": True}

    async def social_login(
        self,
        provider: str,
        provider_id: str,
        email: str,
        profile_data: Optional[Dict[str, Any]] = None,
        client: Optional[ClientInfo] = None,
    ) -> Dict[str, Any]:
        """
        Sign in with an identity already confirmed by an external provider.

        Resolution order: an existing link for (provider, provider_id); else an
        account with the same email, which gets linked and marked verified; else
        a new pre-verified account with a generated username.
        """
        provider_enum = self._parse_provider(provider)
        profile_data = dict(profile_data or {})
        email = email.strip().lower()

        connection = await self._store.get_social_connection_by_provider_id(
            provider_enum, provider_id
        )
        if connection:
            user = await self._store.get_user(connection.user_id)
            if not user:
                raise UnauthorizedError("User associated with this social account not found")
            return await self._start_session(user, client)

        user = await self._store.get_user_by_email(email)
        if user:
            await self._link(user.id, provider_enum, provider_id, profile_data)
            if not user.is_verified:
                # The provider has confirmed ownership of this address.
                user = await self._store.update_user(
                    user.id,
                    is_verified=True,
                    verification_token=None,
                    verification_expires_at=None,
                )
            logger.info("Linked %s account to user %s", provider_enum.value, user.id)
            return await self._start_session(user, client)

        user = await self._create_social_user(email, profile_data)
        await self._link(user.id, provider_enum, provider_id, profile_data)
        logger.info("Created user %s from %s sign-in", user.id, provider_enum.value)
        self._spawn(self._mailer.send_welcome_email(user.email, user.display_name))
        return await self._start_session(user, client)

    # ------------------------------------------------------------------
    # Background side effects
    # ------------------------------------------------------------------
    async def wait_for_background(self) -> None:
        """Wait for pending best-effort emails, e.g. on shutdown or in tests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Best-effort email failed: %s", exc)

    async def _deliver(self, send: Awaitable[None]) -> None:
        try:
            await send
        except DeliveryError:
            logger.exception("Failed to deliver account email")
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _require_user(self, user_id: int) -> User:
        user = await self._store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def _start_session(self, user: User, client: Optional[ClientInfo]) -> Dict[str, Any]:
        client = client or ClientInfo()
        token = self._tokens.issue(user.id)
        await self._store.create_session(
            user_id=user.id,
            token=token,
            expires_at=utcnow() + self._tokens.default_ttl,
            ip_address=client.ip,
            user_agent=client.user_agent,
            location=client.location,
            timezone=client.timezone,
        )
        logger.info("Session started for user %s", user.id)
        self._spawn(self._mailer.send_login_notification(user.email, client))
        return {"token": token, "user": user.to_public()}

    async def _consume_code(self, user: User, code: str) -> None:
        """Check a TOTP code and claim its step so it cannot be replayed."""
        step = self._totp.match_step(user.two_factor_secret or "", code)
        if step is None:
            raise InvalidCodeError()
        # Compare-and-set in storage; concurrent requests with one code get one winner.
        if not await self._store.claim_totp_step(user.id, step):
            raise InvalidCodeError("Verification code has already been used")

    async def _link(
        self,
        user_id: int,
        provider: SocialProvider,
        provider_id: str,
        data: Dict[str, Any],
    ) -> None:
        try:
            await self._store.create_social_connection(
                user_id=user_id, provider=provider, provider_id=provider_id, data=data
            )
        except ConstraintViolationError as exc:
            raise ConflictError(
                f"A different {provider.value} account is already linked to this user"
            ) from exc

    async def _create_social_user(self, email: str, profile_data: Dict[str, Any]) -> User:
        base = email.split("@", 1)[0] or "user"
        for _ in range(_USERNAME_ATTEMPTS):
            username = await self._generate_unique_username(base)
            try:
                return await self._store.create_user(
                    email=email,
                    username=username,
                    password_hash=None,
                    first_name=profile_data.get("firstName"),
                    last_name=profile_data.get("lastName"),
                    is_verified=True,
                    profile_picture=profile_data.get("profilePicture"),
                )
            except ConstraintViolationError as exc:
                if "username" not in exc.field:
                    raise _conflict_from(exc) from exc
                # Another request claimed the name between lookup and insert.
                continue
        raise ConflictError("Could not allocate a unique username")

    async def _generate_unique_username(self, base: str) -> str:
        username = base
        counter = 1
        while await self._store.get_user_by_username(username):
            username = f"{base}{counter}"
            counter += 1
        return username

    @staticmethod
    def _parse_provider(provider: str) -> SocialProvider:
        try:
            return SocialProvider(provider)
        except ValueError as exc:
            raise ValidationError(
                "Validation failed", {"provider": [f"Unsupported provider: {provider}"]}
            ) from exc
