"""Tests for the account lifecycle in AuthService."""
import asyncio
from datetime import timedelta

import pytest
from conftest import PASSWORD, RecordingEmailSender, build_auth_service

from authgate.application.services.auth_service import RESET_REQUESTED_MESSAGE, AuthService
from authgate.domain.clock import utcnow
from authgate.domain.errors import (
    BadRequestError,
    ConflictError,
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
from authgate.domain.models import ClientInfo
from authgate.infrastructure.persistence.memory import InMemoryPersistence
from authgate.services.password_hasher import PasswordHasher
from authgate.services.totp_service import TotpService

VERIFY_SUBJECT = "Verify Your Email Address"
RESET_SUBJECT = "Reset Your Password"


async def enable_two_factor(
    auth_service: AuthService, totp_service: TotpService, user_id: int
) -> str:
    """Run setup and verification; returns the secret."""
    setup = await auth_service.setup_two_factor(user_id)
    await auth_service.verify_and_enable_two_factor(
        user_id, totp_service.current_code(setup["secret"])
    )
    return setup["secret"]


def next_step_code(totp_service: TotpService, secret: str) -> str:
    # The current step is consumed by enabling; the next one is still inside the window.
    return totp_service.current_code(secret, utcnow() + timedelta(seconds=30))


# =============================================================================
# register / verify_email
# =============================================================================


async def test__register__stores_hash_not_plaintext(
    auth_service: AuthService, store: InMemoryPersistence, hasher
) -> None:
    await auth_service.register("a@x.com", "alice", PASSWORD)

    user = await store.get_user_by_email("a@x.com")
    assert user.password_hash != PASSWORD
    assert await hasher.verify(PASSWORD, user.password_hash)
    assert not await hasher.verify("wrong-password", user.password_hash)


async def test__register__returns_public_projection_and_sends_verification(
    auth_service: AuthService, email_sender: RecordingEmailSender
) -> None:
    user = await auth_service.register("A@X.com", "alice", PASSWORD, "Alice")

    assert user["email"] == "a@x.com"
    assert user["isVerified"] is False
    assert "password_hash" not in user and "passwordHash" not in user
    token = email_sender.last_token("a@x.com", VERIFY_SUBJECT)
    assert len(token) == 64


async def test__register__duplicate_email_is_conflict(auth_service: AuthService) -> None:
    await auth_service.register("a@x.com", "alice", PASSWORD)

    with pytest.raises(ConflictError, match="Email already in use"):
        await auth_service.register("A@x.com", "someone", PASSWORD)


async def test__register__duplicate_username_is_conflict(auth_service: AuthService) -> None:
    await auth_service.register("a@x.com", "alice", PASSWORD)

    with pytest.raises(ConflictError, match="Username already in use"):
        await auth_service.register("b@x.com", "ALICE", PASSWORD)


async def test__register__concurrent_same_email_exactly_one_wins(
    any_auth_service: AuthService, any_store
) -> None:
    results = await asyncio.gather(
        any_auth_service.register("a@x.com", "alice", PASSWORD),
        any_auth_service.register("A@x.com", "alicia", PASSWORD),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, dict)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert (await any_store.get_user_by_email("a@x.com")).id == successes[0]["id"]


async def test__register__delivery_failure_keeps_user(
    auth_service: AuthService, store: InMemoryPersistence, email_sender: RecordingEmailSender
) -> None:
    email_sender.fail = True

    with pytest.raises(DeliveryError):
        await auth_service.register("a@x.com", "alice", PASSWORD)
    assert await store.get_user_by_email("a@x.com") is not None


async def test__register_verify_login__full_scenario(
    auth_service: AuthService, store: InMemoryPersistence, email_sender: RecordingEmailSender
) -> None:
    await auth_service.register("a@x.com", "alice", PASSWORD)
    assert (await store.get_user_by_email("a@x.com")).is_verified is False

    await auth_service.verify_email(email_sender.last_token("a@x.com", VERIFY_SUBJECT))
    assert (await store.get_user_by_email("a@x.com")).is_verified is True

    result = await auth_service.login("a@x.com", PASSWORD)
    assert "requiresTwoFactor" not in result
    assert result["token"]
    assert result["user"]["email"] == "a@x.com"


async def test__verify_email__second_use_is_invalid_token(
    auth_service: AuthService, email_sender: RecordingEmailSender
) -> None:
    await auth_service.register("a@x.com", "alice", PASSWORD)
    token = email_sender.last_token("a@x.com", VERIFY_SUBJECT)
    await auth_service.verify_email(token)

    with pytest.raises(InvalidTokenError):
        await auth_service.verify_email(token)


async def test__verify_email__expired_token_rejected(
    auth_service: AuthService, store: InMemoryPersistence, email_sender: RecordingEmailSender
) -> None:
    user = await auth_service.register("a@x.com", "alice", PASSWORD)
    token = email_sender.last_token("a@x.com", VERIFY_SUBJECT)
    await store.update_user(user["id"], verification_expires_at=utcnow() - timedelta(seconds=1))

    with pytest.raises(InvalidTokenError):
        await auth_service.verify_email(token)


async def test__verify_email__sends_welcome(
    auth_service: AuthService, email_sender: RecordingEmailSender, verified_user: dict
) -> None:
    await auth_service.wait_for_background()
    assert any(m.subject == "Welcome!" for m in email_sender.to("a@x.com"))


async def test__resend_verification__rotates_token_with_generic_reply(
    auth_service: AuthService, email_sender: RecordingEmailSender
) -> None:
    await auth_service.register("a@x.com", "alice", PASSWORD)
    first = email_sender.last_token("a@x.com", VERIFY_SUBJECT)

    known = await auth_service.resend_verification("a@x.com")
    unknown = await auth_service.resend_verification("nobody@x.com")

    assert known == unknown
    second = email_sender.last_token("a@x.com", VERIFY_SUBJECT)
    assert second != first
    with pytest.raises(InvalidTokenError):
        await auth_service.verify_email(first)
    await auth_service.verify_email(second)


# =============================================================================
# login / authenticate
# =============================================================================


async def test__login__unverified_fails_regardless_of_password_correctness(
    auth_service: AuthService,
) -> None:
    await auth_service.register("a@x.com", "alice", PASSWORD)

    with pytest.raises(UnverifiedError):
        await auth_service.login("a@x.com", PASSWORD)
    # A wrong password still reports bad credentials first.
    with pytest.raises(InvalidCredentialsError):
        await auth_service.login("a@x.com", "not-the-password")


async def test__login__unknown_email_and_wrong_password_look_the_same(
    auth_service: AuthService, verified_user: dict
) -> None:
    with pytest.raises(InvalidCredentialsError) as unknown:
        await auth_service.login("nobody@x.com", PASSWORD)
    with pytest.raises(InvalidCredentialsError) as wrong:
        await auth_service.login("a@x.com", "wrong-password")

    assert unknown.value.message == wrong.value.message == "Invalid credentials"


async def test__login__unknown_email_still_runs_a_bcrypt_check(
    auth_service: AuthService, hasher: PasswordHasher, monkeypatch: pytest.MonkeyPatch
) -> None:
    checks = []
    original = hasher._verify_sync

    def counting(password: str, password_hash: str) -> bool:
        checks.append(password_hash)
        return original(password, password_hash)

    monkeypatch.setattr(hasher, "_verify_sync", counting)

    with pytest.raises(InvalidCredentialsError):
        await auth_service.login("nobody@x.com", PASSWORD)

    assert len(checks) == 1
    assert checks[0].startswith("$2")


async def test__login__creates_session_with_client_metadata(
    auth_service: AuthService,
    store: InMemoryPersistence,
    email_sender: RecordingEmailSender,
    verified_user: dict,
) -> None:
    client = ClientInfo(ip="10.0.0.1", user_agent="pytest", location="Lisbon", timezone="UTC")

    result = await auth_service.login("a@x.com", PASSWORD, client)
    await auth_service.wait_for_background()

    session = await store.get_session_by_token(result["token"])
    assert session.user_id == verified_user["id"]
    assert session.ip_address == "10.0.0.1"
    assert session.location == "Lisbon"
    notices = [m for m in email_sender.to("a@x.com") if m.subject == "New Login to Your Account"]
    assert len(notices) == 1
    assert "10.0.0.1" in notices[0].body


async def test__login__notification_failure_does_not_fail_login(
    auth_service: AuthService, email_sender: RecordingEmailSender, verified_user: dict
) -> None:
    email_sender.fail = True

    result = await auth_service.login("a@x.com", PASSWORD)
    await auth_service.wait_for_background()

    assert result["token"]


async def test__authenticate__resolves_full_token(
    auth_service: AuthService, verified_user: dict
) -> None:
    token = (await auth_service.login("a@x.com", PASSWORD))["token"]

    principal = await auth_service.authenticate(token)

    assert principal.user.id == verified_user["id"]
    assert principal.session is not None


async def test__authenticate__logged_out_token_is_unauthorized(
    auth_service: AuthService, verified_user: dict
) -> None:
    token = (await auth_service.login("a@x.com", PASSWORD))["token"]
    await auth_service.logout(token)

    with pytest.raises(UnauthorizedError):
        await auth_service.authenticate(token)
    # Logout is idempotent.
    assert await auth_service.logout(token) == {"success": True}


async def test__authenticate__garbage_token_is_unauthorized(auth_service: AuthService) -> None:
    with pytest.raises(UnauthorizedError):
        await auth_service.authenticate("not-a-jwt")


# =============================================================================
# Two-factor authentication
# =============================================================================


async def test__two_factor__login_requires_code_then_validates(
    any_auth_service: AuthService,
    any_store,
    totp_service: TotpService,
    any_verified_user: dict,
) -> None:
    user_id = any_verified_user["id"]
    secret = await enable_two_factor(any_auth_service, totp_service, user_id)

    pending = await any_auth_service.login("a@x.com", PASSWORD)
    assert pending["requiresTwoFactor"] is True
    assert "token" not in pending
    assert await any_store.get_user_sessions(user_id) == []

    with pytest.raises(InvalidCodeError):
        await any_auth_service.validate_two_factor(pending["tempToken"], "000000")
    assert await any_store.get_user_sessions(user_id) == []

    result = await any_auth_service.validate_two_factor(
        pending["tempToken"], next_step_code(totp_service, secret)
    )
    assert result["user"]["twoFactorEnabled"] is True
    assert await any_store.get_session_by_token(result["token"]) is not None


async def test__two_factor__temp_token_rejected_as_full_auth(
    auth_service: AuthService, totp_service: TotpService, verified_user: dict
) -> None:
    await enable_two_factor(auth_service, totp_service, verified_user["id"])
    temp_token = (await auth_service.login("a@x.com", PASSWORD))["tempToken"]

    with pytest.raises(ForbiddenError):
        await auth_service.authenticate(temp_token)
    with pytest.raises(ForbiddenError):
        await auth_service.authenticate(temp_token, require_session=False)


async def test__two_factor__full_token_cannot_be_used_to_validate(
    auth_service: AuthService, totp_service: TotpService, verified_user: dict
) -> None:
    full_token = (await auth_service.login("a@x.com", PASSWORD))["token"]
    secret = await enable_two_factor(auth_service, totp_service, verified_user["id"])

    with pytest.raises(UnauthorizedError):
        await auth_service.validate_two_factor(full_token, next_step_code(totp_service, secret))


async def test__two_factor__code_cannot_be_replayed(
    any_auth_service: AuthService, totp_service: TotpService, any_verified_user: dict
) -> None:
    secret = await enable_two_factor(any_auth_service, totp_service, any_verified_user["id"])
    code = next_step_code(totp_service, secret)
    first = (await any_auth_service.login("a@x.com", PASSWORD))["tempToken"]
    second = (await any_auth_service.login("a@x.com", PASSWORD))["tempToken"]

    await any_auth_service.validate_two_factor(first, code)
    with pytest.raises(InvalidCodeError, match="already been used"):
        await any_auth_service.validate_two_factor(second, code)


async def test__two_factor__concurrent_validations_with_one_code_yield_one_session(
    any_auth_service: AuthService,
    any_store,
    totp_service: TotpService,
    any_verified_user: dict,
) -> None:
    user_id = any_verified_user["id"]
    secret = await enable_two_factor(any_auth_service, totp_service, user_id)
    code = next_step_code(totp_service, secret)
    temp_tokens = [
        (await any_auth_service.login("a@x.com", PASSWORD))["tempToken"] for _ in range(2)
    ]

    results = await asyncio.gather(
        *(any_auth_service.validate_two_factor(temp, code) for temp in temp_tokens),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if isinstance(r, InvalidCodeError)]
    assert len(successes) == 1
    assert len(rejected) == 1
    sessions = await any_store.get_user_sessions(user_id)
    assert [s.token for s in sessions] == [successes[0]["token"]]


async def test__two_factor__setup_does_not_enable(
    auth_service: AuthService, store: InMemoryPersistence, verified_user: dict
) -> None:
    setup = await auth_service.setup_two_factor(verified_user["id"])

    user = await store.get_user(verified_user["id"])
    assert user.two_factor_enabled is False
    assert user.two_factor_secret == setup["secret"]
    assert setup["qrCodeUrl"].startswith("otpauth://totp/")
    assert "issuer=AuthSystem" in setup["qrCodeUrl"]


async def test__two_factor__verify_without_setup_is_bad_request(
    auth_service: AuthService, verified_user: dict
) -> None:
    with pytest.raises(BadRequestError):
        await auth_service.verify_and_enable_two_factor(verified_user["id"], "123456")


async def test__two_factor__verify_wrong_code_keeps_disabled(
    auth_service: AuthService, store: InMemoryPersistence, verified_user: dict
) -> None:
    await auth_service.setup_two_factor(verified_user["id"])

    with pytest.raises(InvalidCodeError):
        await auth_service.verify_and_enable_two_factor(verified_user["id"], "abcdef")
    assert (await store.get_user(verified_user["id"])).two_factor_enabled is False


async def test__two_factor__disable_clears_secret(
    auth_service: AuthService,
    store: InMemoryPersistence,
    totp_service: TotpService,
    verified_user: dict,
) -> None:
    secret = await enable_two_factor(auth_service, totp_service, verified_user["id"])

    with pytest.raises(InvalidCodeError):
        await auth_service.disable_two_factor(verified_user["id"], "000000")
    await auth_service.disable_two_factor(verified_user["id"], next_step_code(totp_service, secret))

    user = await store.get_user(verified_user["id"])
    assert user.two_factor_enabled is False
    assert user.two_factor_secret is None
    with pytest.raises(BadRequestError):
        await auth_service.disable_two_factor(verified_user["id"], "123456")


# =============================================================================
# Password reset and credential changes
# =============================================================================


async def test__request_password_reset__identical_payload_for_unknown_email(
    auth_service: AuthService, verified_user: dict
) -> None:
    known = await auth_service.request_password_reset("a@x.com")
    unknown = await auth_service.request_password_reset("nobody@x.com")

    assert known == unknown == {"success": True, "message": RESET_REQUESTED_MESSAGE}


async def test__request_password_reset__delivery_failure_is_hidden(
    auth_service: AuthService, email_sender: RecordingEmailSender, verified_user: dict
) -> None:
    email_sender.fail = True

    result = await auth_service.request_password_reset("a@x.com")

    assert result["message"] == RESET_REQUESTED_MESSAGE


async def test__reset_password__changes_password_once(
    auth_service: AuthService, email_sender: RecordingEmailSender, verified_user: dict
) -> None:
    await auth_service.request_password_reset("a@x.com")
    token = email_sender.last_token("a@x.com", RESET_SUBJECT)

    await auth_service.reset_password(token, "NewPassword2!")

    with pytest.raises(InvalidCredentialsError):
        await auth_service.login("a@x.com", PASSWORD)
    assert (await auth_service.login("a@x.com", "NewPassword2!"))["token"]
    with pytest.raises(InvalidTokenError):
        await auth_service.reset_password(token, "Another3!")


async def test__reset_password__expired_token_rejected(
    auth_service: AuthService,
    store: InMemoryPersistence,
    email_sender: RecordingEmailSender,
    verified_user: dict,
) -> None:
    await auth_service.request_password_reset("a@x.com")
    token = email_sender.last_token("a@x.com", RESET_SUBJECT)
    await store.update_user(
        verified_user["id"], reset_password_expires_at=utcnow() - timedelta(minutes=1)
    )

    with pytest.raises(InvalidTokenError):
        await auth_service.reset_password(token, "NewPassword2!")


async def test__change_email__demotes_to_unverified_and_notifies_old_address(
    auth_service: AuthService,
    store: InMemoryPersistence,
    email_sender: RecordingEmailSender,
    verified_user: dict,
) -> None:
    await auth_service.change_email(verified_user["id"], "New@x.com", PASSWORD)
    await auth_service.wait_for_background()

    user = await store.get_user(verified_user["id"])
    assert user.email == "new@x.com"
    assert user.is_verified is False
    assert email_sender.last_token("new@x.com", VERIFY_SUBJECT) == user.verification_token
    assert any(
        m.subject == "Your Email Address Has Been Changed" for m in email_sender.to("a@x.com")
    )


async def test__change_email__wrong_password_and_taken_address(
    auth_service: AuthService, email_sender: RecordingEmailSender, verified_user: dict
) -> None:
    await auth_service.register("b@x.com", "bob", PASSWORD)

    with pytest.raises(InvalidCredentialsError):
        await auth_service.change_email(verified_user["id"], "c@x.com", "wrong")
    with pytest.raises(ConflictError):
        await auth_service.change_email(verified_user["id"], "B@x.com", PASSWORD)


async def test__change_password__requires_current_password(
    auth_service: AuthService, verified_user: dict
) -> None:
    with pytest.raises(InvalidCredentialsError):
        await auth_service.change_password(verified_user["id"], "wrong", "NewPassword2!")

    await auth_service.change_password(verified_user["id"], PASSWORD, "NewPassword2!")
    assert (await auth_service.login("a@x.com", "NewPassword2!"))["token"]


async def test__change_password__keeps_other_sessions_by_default(
    auth_service: AuthService, store: InMemoryPersistence, verified_user: dict
) -> None:
    current = (await auth_service.login("a@x.com", PASSWORD))["token"]
    other = (await auth_service.login("a@x.com", PASSWORD))["token"]

    await auth_service.change_password(verified_user["id"], PASSWORD, "NewPassword2!", current)

    assert await store.get_session_by_token(other) is not None


async def test__change_password__revokes_other_sessions_when_configured(
    store: InMemoryPersistence, hasher, token_service, totp_service, email_sender
) -> None:
    service = build_auth_service(
        store, hasher, token_service, totp_service, email_sender,
        revoke_sessions_on_password_change=True,
    )
    user = await service.register("a@x.com", "alice", PASSWORD)
    await service.verify_email(email_sender.last_token("a@x.com", VERIFY_SUBJECT))
    current = (await service.login("a@x.com", PASSWORD))["token"]
    other = (await service.login("a@x.com", PASSWORD))["token"]

    await service.change_password(user["id"], PASSWORD, "NewPassword2!", current)
    await service.wait_for_background()

    assert await store.get_session_by_token(current) is not None
    assert await store.get_session_by_token(other) is None


# =============================================================================
# Sessions
# =============================================================================


async def test__logout_all_devices__removes_every_session(
    auth_service: AuthService, store: InMemoryPersistence, verified_user: dict
) -> None:
    await auth_service.login("a@x.com", PASSWORD)
    await auth_service.login("a@x.com", PASSWORD)

    await auth_service.logout_all_devices(verified_user["id"])

    assert await store.get_user_sessions(verified_user["id"]) == []


async def test__get_user_sessions__marks_current(
    auth_service: AuthService, verified_user: dict
) -> None:
    current = (await auth_service.login("a@x.com", PASSWORD))["token"]
    await auth_service.login("a@x.com", PASSWORD)

    sessions = await auth_service.get_user_sessions(verified_user["id"], current)

    assert len(sessions) == 2
    assert sorted(s["current"] for s in sessions) == [False, True]
    assert all("token" not in s for s in sessions)


async def test__revoke_session__only_own_sessions(
    auth_service: AuthService, store: InMemoryPersistence, email_sender, verified_user: dict
) -> None:
    bob = await auth_service.register("b@x.com", "bob", PASSWORD)
    await auth_service.verify_email(email_sender.last_token("b@x.com", VERIFY_SUBJECT))
    bob_token = (await auth_service.login("b@x.com", PASSWORD))["token"]
    bob_session = await store.get_session_by_token(bob_token)

    with pytest.raises(NotFoundError):
        await auth_service.revoke_session(verified_user["id"], bob_session.id)

    await auth_service.revoke_session(bob["id"], bob_session.id)
    assert await store.get_session_by_token(bob_token) is None


# =============================================================================
# Profile
# =============================================================================


async def test__update_profile__applies_partial_changes(
    auth_service: AuthService, verified_user: dict
) -> None:
    user = await auth_service.update_profile(verified_user["id"], first_name="Al")

    assert user["firstName"] == "Al"
    assert user["lastName"] == "Liddell"


async def test__update_profile__taken_username_is_conflict(
    auth_service: AuthService, verified_user: dict
) -> None:
    await auth_service.register("b@x.com", "bob", PASSWORD)

    with pytest.raises(ConflictError, match="Username is already taken"):
        await auth_service.update_profile(verified_user["id"], username="Bob")


async def test__update_profile__rejects_unknown_and_empty_fields(
    auth_service: AuthService, verified_user: dict
) -> None:
    with pytest.raises(ValidationError):
        await auth_service.update_profile(verified_user["id"], email="x@x.com")
    with pytest.raises(ValidationError):
        await auth_service.update_profile(verified_user["id"], username=None)


async def test__get_user_profile__lists_social_connections(
    auth_service: AuthService, verified_user: dict
) -> None:
    await auth_service.social_login("github", "gh-1", "a@x.com")

    profile = await auth_service.get_user_profile(verified_user["id"])

    assert profile["socialConnections"] == ["github"]
    assert profile["email"] == "a@x.com"
