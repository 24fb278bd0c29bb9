"""API router for the signed-in user's profile, credentials and sessions."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from ....application.services.auth_service import AuthService, Principal
from ....core.dependencies import get_auth_service
from ....domain.models import SocialProvider
from ...api.dependencies import require_full_auth
from ...api.schemas.user_schemas import (
    EmailChangeRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
)

router = APIRouter(prefix="/api/user", tags=["User"])


@router.get("/profile")
async def get_profile(
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.get_user_profile(principal.user.id)


@router.patch("/profile")
async def update_profile(
    payload: ProfileUpdateRequest,
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    user = await auth_service.update_profile(
        principal.user.id, **payload.model_dump(exclude_unset=True)
    )
    return {"success": True, "message": "Profile updated successfully", "user": user}


@router.post("/email")
async def change_email(
    payload: EmailChangeRequest,
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.change_email(principal.user.id, payload.new_email, payload.password)


@router.post("/password")
async def change_password(
    payload: PasswordChangeRequest,
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.change_password(
        principal.user.id,
        payload.current_password,
        payload.new_password,
        current_token=principal.token,
    )


@router.get("/sessions")
async def list_sessions(
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> List[Dict[str, Any]]:
    return await auth_service.get_user_sessions(principal.user.id, current_token=principal.token)


@router.delete("/sessions/{session_id}")
async def revoke_session(
    session_id: int,
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.revoke_session(principal.user.id, session_id)


@router.delete("/social/{provider}")
async def unlink_social(
    provider: SocialProvider,
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.unlink_social_connection(principal.user.id, provider.value)
