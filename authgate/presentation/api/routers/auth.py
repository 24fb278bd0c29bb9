from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, status

from ....application.services.auth_service import AuthService, Principal
from ....core.dependencies import get_auth_service
from ....domain.models import ClientInfo, SocialProvider
from ...api.dependencies import get_bearer_token, get_client_info, require_full_auth, require_full_token
from ...api.schemas.auth import (
    EmailRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TwoFactorCodeRequest,
)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    user = await auth_service.register(
        email=payload.email,
        username=payload.username,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    return {
        "message": "Registration successful. Please check your email to verify your account.",
        "user": user,
    }


@router.post("/login")
async def login(
    payload: LoginRequest,
    client: ClientInfo = Depends(get_client_info),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.login(payload.email, payload.password, client)


@router.get("/verify-email")
async def verify_email(
    token: str = Query(min_length=1),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.verify_email(token)


@router.post("/resend-verification")
async def resend_verification(
    payload: EmailRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.resend_verification(payload.email)


@router.post("/forgot-password")
async def forgot_password(
    payload: EmailRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.request_password_reset(payload.email)


@router.post("/reset-password")
async def reset_password(
    payload: ResetPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.reset_password(payload.token, payload.password)


@router.post("/logout")
async def logout(
    principal: Principal = Depends(require_full_token),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.logout(principal.token)


@router.post("/logout-all")
async def logout_all(
    principal: Principal = Depends(require_full_token),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.logout_all_devices(principal.user.id)


# Two-factor authentication ----------------------------------------------------
@router.post("/2fa/setup")
async def two_factor_setup(
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.setup_two_factor(principal.user.id)


@router.post("/2fa/verify")
async def two_factor_verify(
    payload: TwoFactorCodeRequest,
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.verify_and_enable_two_factor(principal.user.id, payload.code)


@router.post("/2fa/disable")
async def two_factor_disable(
    payload: TwoFactorCodeRequest,
    principal: Principal = Depends(require_full_auth),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.disable_two_factor(principal.user.id, payload.code)


@router.post("/2fa/validate")
async def two_factor_validate(
    payload: TwoFactorCodeRequest,
    temp_token: str = Depends(get_bearer_token),
    client: ClientInfo = Depends(get_client_info),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.validate_two_factor(temp_token, payload.code, client)


# Social providers ---------------------------------------------------------------
# The OAuth redirect dance is handled outside this service; once a provider
# identity is confirmed it is passed to AuthService.social_login.
@router.get("/{provider}", status_code=status.HTTP_501_NOT_IMPLEMENTED)
async def social_redirect(provider: SocialProvider) -> Dict[str, Any]:
    return {"message": f"{provider.value.title()} OAuth is not implemented"}


@router.get("/{provider}/callback", status_code=status.HTTP_501_NOT_IMPLEMENTED)
async def social_callback(provider: SocialProvider) -> Dict[str, Any]:
    return {"message": f"{provider.value.title()} OAuth callback is not implemented"}
