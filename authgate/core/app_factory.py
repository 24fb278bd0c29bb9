from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..application.services.auth_service import AuthService
from ..domain.ports.persistence import PersistenceGateway
from ..infrastructure.persistence.memory import InMemoryPersistence
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..presentation.api.errors import register_exception_handlers
from ..presentation.api.routers import auth as auth_router
from ..presentation.api.routers import user_router
from ..services.email_service import AccountMailer, EmailSender, LoggingEmailSender, SmtpEmailSender
from ..services.password_hasher import PasswordHasher
from ..services.session_reaper import SessionReaper
from ..services.token_service import TokenService
from ..services.totp_service import TotpService

logger = logging.getLogger(__name__)


def create_application(
    settings: Optional[Settings] = None,
    *,
    persistence: Optional[PersistenceGateway] = None,
    email_sender: Optional[EmailSender] = None,
) -> FastAPI:
    """Build the ASGI app. Tests pass their own persistence and email sender."""
    settings = settings or Settings()

    app = FastAPI(
        title=f"{settings.app_name} Authentication API",
        lifespan=_create_lifespan(settings, persistence, email_sender),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.trusted_proxies:
        # Rewrites the request client from X-Forwarded-For, for trusted peers only.
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxies)

    register_exception_handlers(app)
    app.include_router(auth_router.router)
    app.include_router(user_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        storage_ok = await container.persistence.ping()
        return {"ok": storage_ok, "storage": "up" if storage_ok else "unavailable"}

    return app


def build_container(
    settings: Settings,
    persistence: Optional[PersistenceGateway] = None,
    email_sender: Optional[EmailSender] = None,
) -> ApplicationContainer:
    if persistence is None:
        if settings.storage_backend == "memory":
            logger.warning("Using in-memory storage; data is lost on restart.")
            persistence = InMemoryPersistence()
        else:
            persistence = SQLitePersistence(settings.database_path)

    if email_sender is None:
        if settings.smtp_enabled:
            email_sender = SmtpEmailSender(
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                smtp_username=settings.smtp_username,
                smtp_password=settings.smtp_password,
                from_email=settings.email_from_address,
                from_name=settings.email_from_name,
                use_tls=settings.smtp_use_tls,
                timeout=settings.smtp_timeout_seconds,
            )
        else:
            logger.warning("SMTP not configured; emails will only be logged.")
            email_sender = LoggingEmailSender()

    token_service = TokenService(
        settings.jwt_secret,
        default_ttl=timedelta(days=settings.token_ttl_days),
        temp_ttl=timedelta(minutes=settings.temp_token_ttl_minutes),
    )
    totp_service = TotpService(settings.totp_issuer, tolerance_steps=settings.totp_tolerance_steps)
    mailer = AccountMailer(email_sender, settings.app_url)
    auth_service = AuthService(
        persistence,
        PasswordHasher(settings.bcrypt_rounds),
        token_service,
        totp_service,
        mailer,
        verification_ttl=timedelta(hours=settings.verification_ttl_hours),
        reset_ttl=timedelta(hours=settings.reset_ttl_hours),
        revoke_sessions_on_password_change=settings.revoke_sessions_on_password_change,
    )
    session_reaper = SessionReaper(
        persistence, interval_seconds=settings.session_purge_interval_seconds
    )

    return ApplicationContainer(
        settings=settings,
        persistence=persistence,
        token_service=token_service,
        totp_service=totp_service,
        mailer=mailer,
        auth_service=auth_service,
        session_reaper=session_reaper,
    )


def _create_lifespan(
    settings: Settings,
    persistence: Optional[PersistenceGateway],
    email_sender: Optional[EmailSender],
):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        container = build_container(settings, persistence, email_sender)
        app.state.container = container  # type: ignore[attr-defined]

        await container.session_reaper.start()
        try:
            yield
        finally:
            await container.session_reaper.stop()
            await container.auth_service.wait_for_background()
            container.persistence.close()

    return lifespan
