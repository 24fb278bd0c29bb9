from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ...application.services.auth_service import AuthService, Principal
from ...core.dependencies import get_auth_service
from ...domain.errors import UnauthorizedError
from ...domain.models import ClientInfo

_bearer_scheme = HTTPBearer(auto_error=False)


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise UnauthorizedError("Authentication required")
    return credentials.credentials


async def require_full_token(
    token: str = Depends(get_bearer_token),
    auth_service: AuthService = Depends(get_auth_service),
) -> Principal:
    """Bearer token must verify and must not be a pending-2FA temp token."""
    return await auth_service.authenticate(token, require_session=False)


async def require_full_auth(
    token: str = Depends(get_bearer_token),
    auth_service: AuthService = Depends(get_auth_service),
) -> Principal:
    """Full authentication: valid token, no pending 2FA, and a live session."""
    return await auth_service.authenticate(token)


def get_client_info(request: Request) -> ClientInfo:
    # X-Forwarded-For is only applied upstream, for TRUSTED_PROXIES peers.
    ip = request.client.host if request.client else "unknown"
    return ClientInfo(
        ip=ip or "unknown",
        user_agent=request.headers.get("user-agent", "unknown"),
        location=request.headers.get("x-client-location", "Unknown"),
        timezone=request.headers.get("x-client-timezone", "Unknown"),
    )
