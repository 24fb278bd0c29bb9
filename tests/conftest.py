"""Pytest fixtures shared by the service, storage and API tests."""
import re
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from authgate.application.services.auth_service import AuthService
from authgate.core.app_factory import create_application
from authgate.core.config import Settings
from authgate.domain.errors import DeliveryError
from authgate.infrastructure.persistence.memory import InMemoryPersistence
from authgate.infrastructure.persistence.sqlite import SQLitePersistence
from authgate.services.email_service import AccountMailer
from authgate.services.password_hasher import PasswordHasher
from authgate.services.token_service import TokenService
from authgate.services.totp_service import TotpService

TEST_SECRET = "test-signing-key"
PASSWORD = "Password1!"
_TOKEN_RE = re.compile(r"token=([0-9a-f]{64})")


@dataclass
class SentEmail:
    to: str
    subject: str
    body: str


class RecordingEmailSender:
    """EmailSender that keeps every message in memory and can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[SentEmail] = []
        self.fail = False

    async def send(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise DeliveryError(f"refusing to send '{subject}' to {to}")
        self.sent.append(SentEmail(to=to, subject=subject, body=body))

    def to(self, address: str) -> list[SentEmail]:
        return [message for message in self.sent if message.to == address]

    def last_token(self, address: str, subject: str) -> str:
        """Return the token embedded in the newest matching email's link."""
        for message in reversed(self.sent):
            if message.to == address and message.subject == subject:
                match = _TOKEN_RE.search(message.body)
                assert match, f"no token link in '{subject}'"
                return match.group(1)
        raise AssertionError(f"no '{subject}' email sent to {address}")


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def store() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path):
    """Run storage tests against every backend."""
    if request.param == "memory":
        backend = InMemoryPersistence()
    else:
        backend = SQLitePersistence(tmp_path / "authgate.db")
    yield backend
    backend.close()


@pytest.fixture
def token_service() -> TokenService:
    return TokenService(TEST_SECRET)


@pytest.fixture
def totp_service() -> TotpService:
    return TotpService("AuthSystem")


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=10)


def build_auth_service(
    store: Any,
    hasher: PasswordHasher,
    token_service: TokenService,
    totp_service: TotpService,
    email_sender: RecordingEmailSender,
    **options: Any,
) -> AuthService:
    return AuthService(
        store,
        hasher,
        token_service,
        totp_service,
        AccountMailer(email_sender, "http://app.test"),
        verification_ttl=timedelta(hours=24),
        reset_ttl=timedelta(hours=1),
        **options,
    )


@pytest.fixture
async def auth_service(
    store: InMemoryPersistence,
    hasher: PasswordHasher,
    token_service: TokenService,
    totp_service: TotpService,
    email_sender: RecordingEmailSender,
) -> AsyncGenerator[AuthService]:
    service = build_auth_service(store, hasher, token_service, totp_service, email_sender)
    yield service
    await service.wait_for_background()


@pytest.fixture
async def verified_user(auth_service: AuthService, email_sender: RecordingEmailSender) -> dict:
    """Register and verify alice; returns her public projection."""
    user = await auth_service.register("a@x.com", "alice", PASSWORD, "Alice", "Liddell")
    token = email_sender.last_token("a@x.com", "Verify Your Email Address")
    await auth_service.verify_email(token)
    return user


@pytest.fixture
async def any_auth_service(
    any_store: Any,
    hasher: PasswordHasher,
    token_service: TokenService,
    totp_service: TotpService,
    email_sender: RecordingEmailSender,
) -> AsyncGenerator[AuthService]:
    """AuthService over every persistence backend."""
    service = build_auth_service(any_store, hasher, token_service, totp_service, email_sender)
    yield service
    await service.wait_for_background()


@pytest.fixture
async def any_verified_user(any_auth_service: AuthService, email_sender: RecordingEmailSender) -> dict:
    user = await any_auth_service.register("a@x.com", "alice", PASSWORD, "Alice", "Liddell")
    token = email_sender.last_token("a@x.com", "Verify Your Email Address")
    await any_auth_service.verify_email(token)
    return user


@pytest.fixture
async def app(
    monkeypatch: pytest.MonkeyPatch,
    store: InMemoryPersistence,
    email_sender: RecordingEmailSender,
) -> AsyncGenerator[FastAPI]:
    """Application with its lifespan running against the in-memory store."""
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
    monkeypatch.setenv("BCRYPT_ROUNDS", "10")
    monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
    application = create_application(Settings(), persistence=store, email_sender=email_sender)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
