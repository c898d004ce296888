"""
Auth Routes - Verification codes, registration, login and token lifecycle.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from app.api.dependencies import (
    RequestContext,
    get_auth_service,
    get_current_user_id,
    get_request_context,
)
from app.models.api import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RequestCodeRequest,
    RequestCodeResponse,
    SuccessResponse,
    UpdateProfileRequest,
    UserEnvelope,
    UserResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from app.models.domain import AuthSession, UserProfile
from app.services.auth import AuthService

router = APIRouter(prefix="/api/auth", tags=["auth"])


def user_response(profile: UserProfile) -> UserResponse:
    """Map a sanitized profile onto the response model."""
    return UserResponse(
        id=profile.id,
        email=profile.email,
        name=profile.name,
        avatar=profile.avatar,
        email_verified=profile.email_verified,
        has_api_key=profile.has_api_key,
        api_provider=profile.api_provider,
        use_trial_mode=profile.use_trial_mode,
        trial_credits=profile.trial_credits,
        created_at=profile.created_at,
        last_login_at=profile.last_login_at,
    )


def auth_response(session: AuthSession) -> AuthResponse:
    return AuthResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        user=user_response(session.user),
    )


@router.post("/request-code", response_model=RequestCodeResponse)
async def request_code(
    request: RequestCodeRequest,
    auth: AuthService = Depends(get_auth_service),
) -> RequestCodeResponse:
    """
    Send a six-digit verification code to an email address.

    userExists tells the client whether the code will log in or start signup.
    """
    issued = await auth.request_code(request.email, request.type)
    return RequestCodeResponse(user_exists=issued.user_exists)


@router.post("/verify-code", response_model=VerifyCodeResponse)
async def verify_code(
    request: VerifyCodeRequest,
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> VerifyCodeResponse:
    """
    Consume a verification code.

    Existing users receive a session; new emails are marked verified and
    may register within the verification window.
    """
    outcome = await auth.verify_code(
        request.email, request.code, context.ip_address, context.user_agent
    )
    if outcome.session is None:
        return VerifyCodeResponse(status="new_user", email=outcome.email, verified=True)
    return VerifyCodeResponse(
        status="existing_user",
        access_token=outcome.session.access_token,
        refresh_token=outcome.session.refresh_token,
        user=user_response(outcome.session.user),
    )


@router.post("/register", response_model=AuthResponse)
async def register(
    request: RegisterRequest,
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> AuthResponse:
    """Create an account for a recently verified email."""
    session = await auth.register(
        request.email, request.name, request.password, context.ip_address, context.user_agent
    )
    return auth_response(session)


@router.post("/login", response_model=AuthResponse)
async def login(
    request: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> AuthResponse:
    """Password login."""
    session = await auth.login(
        request.email, request.password, context.ip_address, context.user_agent
    )
    return auth_response(session)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    request: RefreshRequest,
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> RefreshResponse:
    """Exchange a refresh token for a new access token (and a rotated refresh token)."""
    refreshed = await auth.refresh(request.refresh_token, context.ip_address, context.user_agent)
    return RefreshResponse(
        access_token=refreshed.access_token,
        refresh_token=refreshed.refresh_token,
        user=user_response(refreshed.user),
    )


@router.post("/logout", response_model=SuccessResponse)
async def logout(
    request: LogoutRequest | None = None,
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> SuccessResponse:
    """Revoke the presented refresh token. Safe to repeat."""
    refresh_token = request.refresh_token if request else None
    await auth.logout(user_id, refresh_token, context.ip_address, context.user_agent)
    return SuccessResponse(message="Logged out")


@router.post("/logout-all", response_model=SuccessResponse)
async def logout_all(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> SuccessResponse:
    """Revoke every refresh token of the caller."""
    revoked = await auth.logout_all(user_id, context.ip_address, context.user_agent)
    return SuccessResponse(message=f"Logged out of {revoked} session(s)")


@router.get("/me", response_model=UserEnvelope)
async def me(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
) -> UserEnvelope:
    """Profile of the authenticated user."""
    return UserEnvelope(user=user_response(await auth.get_current_user(user_id)))


@router.put("/profile", response_model=UserEnvelope)
async def update_profile(
    request: UpdateProfileRequest,
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
) -> UserEnvelope:
    """Change display name and/or avatar."""
    profile = await auth.update_profile(user_id, name=request.name, avatar=request.avatar)
    return UserEnvelope(user=user_response(profile))


@router.put("/password", response_model=SuccessResponse)
async def change_password(
    request: ChangePasswordRequest,
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> SuccessResponse:
    """Change password; every session is signed out."""
    await auth.change_password(
        user_id,
        request.current_password,
        request.new_password,
        context.ip_address,
        context.user_agent,
    )
    return SuccessResponse(message="Password updated. Please log in again.")
