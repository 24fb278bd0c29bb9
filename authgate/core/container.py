from dataclasses import dataclass

from ..application.services.auth_service import AuthService
from .config import Settings
from ..domain.ports.persistence import PersistenceGateway
from ..services.email_service import AccountMailer
from ..services.session_reaper import SessionReaper
from ..services.token_service import TokenService
from ..services.totp_service import TotpService


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: PersistenceGateway
    token_service: TokenService
    totp_service: TotpService
    mailer: AccountMailer
    auth_service: AuthService
    session_reaper: SessionReaper
