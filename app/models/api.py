"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Request and response bodies use camelCase on the wire.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class VerificationPurpose(str, Enum):
    """Why a verification code was requested."""

    LOGIN = "login"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class AIProvider(str, Enum):
    """Supported third-party AI providers."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GEMINI = "gemini"


class MessageRole(str, Enum):
    """Canonical chat roles."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class CamelModel(BaseModel):
    """Base model serialising to camelCase and accepting either case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Auth Models
# ============================================================================


class RequestCodeRequest(CamelModel):
    """POST /api/auth/request-code request body."""

    email: str = Field(..., min_length=3, max_length=320)
    type: VerificationPurpose = VerificationPurpose.LOGIN

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Require something that looks like an address."""
        if "@" not in v:
            raise ValueError("Valid email is required")
        return v


class RequestCodeResponse(CamelModel):
    """POST /api/auth/request-code response."""

    success: bool = True
    user_exists: bool
    message: str = "Verification code sent to your email"


class VerifyCodeRequest(CamelModel):
    """POST /api/auth/verify-code request body."""

    email: str = Field(..., min_length=3, max_length=320)
    code: str = Field(..., min_length=1, max_length=16)


class UserResponse(CamelModel):
    """Sanitized user representation."""

    id: UUID
    email: str
    name: str
    avatar: str | None = None
    email_verified: bool
    has_api_key: bool
    api_provider: str | None = None
    use_trial_mode: bool
    trial_credits: Decimal
    created_at: datetime
    last_login_at: datetime | None = None


class VerifyCodeResponse(CamelModel):
    """POST /api/auth/verify-code response (existing or new user)."""

    status: Literal["existing_user", "new_user"]
    email: str | None = None
    verified: bool | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    user: UserResponse | None = None


class RegisterRequest(CamelModel):
    """POST /api/auth/register request body."""

    email: str = Field(..., min_length=3, max_length=320)
    name: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)


class LoginRequest(CamelModel):
    """POST /api/auth/login request body."""

    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)


class AuthResponse(CamelModel):
    """Token pair plus user."""

    access_token: str
    refresh_token: str
    user: UserResponse


class RefreshRequest(CamelModel):
    """POST /api/auth/refresh request body."""

    refresh_token: str = Field(..., min_length=1)


class RefreshResponse(CamelModel):
    """POST /api/auth/refresh response."""

    access_token: str
    refresh_token: str | None = None
    user: UserResponse


class LogoutRequest(CamelModel):
    """POST /api/auth/logout request body."""

    refresh_token: str | None = None


class SuccessResponse(CamelModel):
    """Generic acknowledgement."""

    success: bool = True
    message: str | None = None


class UserEnvelope(CamelModel):
    """GET /api/auth/me response."""

    user: UserResponse


class UpdateProfileRequest(CamelModel):
    """PUT /api/auth/profile request body."""

    name: str | None = Field(None, min_length=1, max_length=255)
    avatar: str | None = Field(None, max_length=2048)


class ChangePasswordRequest(CamelModel):
    """PUT /api/auth/password request body."""

    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=1024)


# ============================================================================
# Settings Models
# ============================================================================


class SaveApiKeyRequest(CamelModel):
    """POST /api/settings/api-key request body."""

    provider: str = Field(..., min_length=1, max_length=50)
    api_key: str = Field(..., min_length=1, max_length=1024)


class SaveApiKeyResponse(CamelModel):
    """POST /api/settings/api-key response."""

    success: bool = True
    message: str = "API key saved successfully"
    provider: str
    warning: str | None = None


class ApiKeyStatusResponse(CamelModel):
    """GET /api/settings/api-key response."""

    has_api_key: bool
    provider: str | None = None
    use_trial_mode: bool
    trial_credits: Decimal
    trial_started_at: datetime | None = None


class ValidateApiKeyResponse(CamelModel):
    """POST /api/settings/api-key/validate response."""

    valid: bool
    error: str | None = None
    warning: bool = False
    is_quota_error: bool = False


class TrialModeResponse(CamelModel):
    """POST /api/settings/trial-mode/enable response."""

    success: bool = True
    trial_credits: Decimal
    already_enabled: bool = False
    trial_started_at: datetime | None = None


# ============================================================================
# AI Models
# ============================================================================


class ChatMessageIn(CamelModel):
    """A chat message as sent by the client."""

    role: str = Field(..., min_length=1, max_length=20)
    content: str

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """The client labels assistant turns "ai"; both spellings are accepted."""
        if v not in ("user", "assistant", "ai", "system"):
            raise ValueError(f"Unsupported message role: {v}")
        return v


class ChatRequest(CamelModel):
    """POST /api/ai/chat request body."""

    messages: list[ChatMessageIn] = Field(..., min_length=1)
    thread_id: str | None = None


class ChatResponse(CamelModel):
    """POST /api/ai/chat response."""

    response: str
    model: str
    tokens: int
    trial_credits: Decimal | None = None


class ExtractIssuesRequest(CamelModel):
    """POST /api/ai/extract-issues request body."""

    messages: list[ChatMessageIn]
    current_tree: dict[str, Any] | None = None
    workspace_id: str | None = None


class ExtractIssuesResponse(CamelModel):
    """POST /api/ai/extract-issues response."""

    tree: dict[str, Any]


class ProviderUsageItem(CamelModel):
    """Usage for one provider/endpoint pair."""

    provider: str
    endpoint: str
    requests: int
    tokens: int
    cost: Decimal


class UsageSummaryItem(CamelModel):
    """Period totals."""

    total_requests: int
    total_tokens: int
    estimated_cost: Decimal


class DailyUsageItem(CamelModel):
    """Requests and tokens for one day."""

    date: str
    requests: int
    tokens: int


class UsageResponse(CamelModel):
    """GET /api/ai/usage response."""

    period: str
    summary: UsageSummaryItem
    by_provider: list[ProviderUsageItem]
    daily: list[DailyUsageItem] = Field(default_factory=list)


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
    version: str
