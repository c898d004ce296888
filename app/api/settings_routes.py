"""
Settings Routes - Provider API key vault and trial mode.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from structlog import get_logger

from app.api.dependencies import (
    RequestContext,
    get_ai_router,
    get_auth_service,
    get_current_user_id,
    get_request_context,
)
from app.exceptions import CredentialError
from app.models.api import (
    ApiKeyStatusResponse,
    SaveApiKeyRequest,
    SaveApiKeyResponse,
    SuccessResponse,
    TrialModeResponse,
    ValidateApiKeyResponse,
)
from app.services.ai_proxy import MeteredAIProxyRouter
from app.services.auth import AuthService

logger = get_logger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])

QUOTA_WARNING = (
    "API key saved, but your account has hit a quota or rate limit. "
    "Check your billing with the provider."
)


@router.get("/api-key", response_model=ApiKeyStatusResponse)
async def get_api_key_status(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
) -> ApiKeyStatusResponse:
    """Whether a key is stored, which provider, and the trial balance. Never the key."""
    status = await auth.get_api_key_status(user_id)
    return ApiKeyStatusResponse(
        has_api_key=status.has_api_key,
        provider=status.provider,
        use_trial_mode=status.use_trial_mode,
        trial_credits=status.trial_credits,
        trial_started_at=status.trial_started_at,
    )


@router.post("/api-key", response_model=SaveApiKeyResponse)
async def save_api_key(
    request: SaveApiKeyRequest,
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
    ai: MeteredAIProxyRouter = Depends(get_ai_router),
    context: RequestContext = Depends(get_request_context),
) -> SaveApiKeyResponse:
    """
    Validate the key against its provider, then encrypt and store it.

    Keys that only fail on quota are stored with a warning.

    Raises:
        CredentialError: Provider rejected the key
    """
    validation = await ai.validate_api_key(request.provider, request.api_key)
    if not validation.valid:
        logger.info("api_key_save_rejected", user_id=str(user_id), provider=request.provider)
        raise CredentialError(f"Invalid API key: {validation.error or 'rejected by provider'}")

    provider = await auth.save_api_key(
        user_id,
        request.provider,
        request.api_key.strip(),
        context.ip_address,
        context.user_agent,
    )
    return SaveApiKeyResponse(
        provider=provider.value,
        warning=QUOTA_WARNING if validation.is_quota_error else None,
    )


@router.delete("/api-key", response_model=SuccessResponse)
async def remove_api_key(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> SuccessResponse:
    """Clear the stored key. Safe to repeat."""
    await auth.remove_api_key(user_id, context.ip_address, context.user_agent)
    return SuccessResponse(message="API key removed")


@router.post("/api-key/validate", response_model=ValidateApiKeyResponse)
async def validate_api_key(
    request: SaveApiKeyRequest,
    user_id: UUID = Depends(get_current_user_id),
    ai: MeteredAIProxyRouter = Depends(get_ai_router),
) -> ValidateApiKeyResponse:
    """Probe the provider with a candidate key without storing it."""
    validation = await ai.validate_api_key(request.provider, request.api_key)
    return ValidateApiKeyResponse(
        valid=validation.valid,
        error=validation.error,
        warning=validation.is_quota_error,
        is_quota_error=validation.is_quota_error,
    )


@router.post("/trial-mode/enable", response_model=TrialModeResponse)
async def enable_trial_mode(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
) -> TrialModeResponse:
    """Grant the starting trial balance once; repeat calls report alreadyEnabled."""
    activation = await auth.enable_trial_mode(user_id, context.ip_address, context.user_agent)
    return TrialModeResponse(
        trial_credits=activation.trial_credits,
        already_enabled=activation.already_enabled,
        trial_started_at=activation.trial_started_at,
    )
