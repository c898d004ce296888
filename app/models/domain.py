"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from typing import Any
from uuid import UUID

from app.models.api import AIProvider, MessageRole, VerificationPurpose

# Trial credits are stored as integer micro-units of the currency.
MICROS_PER_UNIT = 1_000_000


def to_micros(amount: Decimal) -> int:
    """Convert a currency amount to whole micro-units, rounding up."""
    return int((amount * MICROS_PER_UNIT).to_integral_value(rounding=ROUND_CEILING))


def from_micros(micros: int) -> Decimal:
    """Convert micro-units back to a currency amount."""
    return (Decimal(micros) / MICROS_PER_UNIT).quantize(Decimal("0.000001"))


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and compare them lower-cased."""
    return email.strip().lower()


# ============================================================================
# Encryption
# ============================================================================


@dataclass(frozen=True)
class EncryptedSecret:
    """Hex-encoded AES-GCM ciphertext (auth tag appended) and its IV."""

    ciphertext: str
    iv: str


# ============================================================================
# Tokens
# ============================================================================


@dataclass(frozen=True)
class TokenPair:
    """Access token plus the opaque refresh token issued alongside it."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims carried by an access token."""

    user_id: UUID
    email: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshResult:
    """Result of exchanging a refresh token.

    ``refresh_token`` is the rotated replacement, or None when rotation is off.
    """

    user_id: UUID
    access_token: str
    refresh_token: str | None


# ============================================================================
# Users
# ============================================================================


@dataclass(frozen=True)
class UserProfile:
    """Sanitized user snapshot safe to return to clients."""

    id: UUID
    email: str
    name: str
    avatar: str | None
    email_verified: bool
    has_api_key: bool
    api_provider: str | None
    use_trial_mode: bool
    trial_credits: Decimal
    created_at: datetime
    last_login_at: datetime | None


@dataclass(frozen=True)
class CodeRequestResult:
    """Outcome of issuing a verification code."""

    email: str
    user_exists: bool
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class VerifiedCode:
    """A verification code that has just been consumed."""

    email: str
    purpose: VerificationPurpose
    used_at: datetime


@dataclass(frozen=True)
class AuthSession:
    """Tokens plus the user they were issued to."""

    access_token: str
    refresh_token: str
    user: UserProfile


@dataclass(frozen=True)
class RefreshedSession:
    """A new access token, the rotated refresh token (if any) and the user."""

    access_token: str
    refresh_token: str | None
    user: UserProfile


@dataclass(frozen=True)
class CodeVerificationOutcome:
    """Result of verifying a code: a logged-in existing user or a new email."""

    status: str  # "existing_user" or "new_user"
    email: str
    session: AuthSession | None = None


# ============================================================================
# Credentials and trial credits
# ============================================================================


@dataclass(frozen=True)
class DecryptedCredential:
    """A user's plaintext provider key. Lives only for the duration of one call."""

    provider: AIProvider
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class ResolvedCredential:
    """The credential chosen for a call and whether it is metered as trial usage."""

    provider: AIProvider
    api_key: str = field(repr=False)
    is_trial: bool


@dataclass(frozen=True)
class ApiKeyStatus:
    """What the settings page shows about a user's key and trial balance."""

    has_api_key: bool
    provider: str | None
    use_trial_mode: bool
    trial_credits: Decimal
    trial_started_at: datetime | None


@dataclass(frozen=True)
class TrialActivation:
    """Result of enabling trial mode."""

    trial_credits: Decimal
    already_enabled: bool
    trial_started_at: datetime | None


# ============================================================================
# AI calls
# ============================================================================


@dataclass(frozen=True)
class ChatMessage:
    """Canonical chat message passed to every provider adapter."""

    role: MessageRole
    content: str


@dataclass(frozen=True)
class ProviderRequest:
    """Provider-specific HTTP request produced by an adapter."""

    url: str
    headers: dict[str, str]
    body: dict[str, Any]


@dataclass(frozen=True)
class ProviderCompletion:
    """Canonical provider response."""

    text: str
    model: str
    tokens: int


@dataclass(frozen=True)
class ChatResult:
    """Result of a metered chat call."""

    response: str
    model: str
    tokens: int
    is_trial: bool
    cost: Decimal
    trial_credits: Decimal | None


@dataclass(frozen=True)
class KeyValidation:
    """Outcome of probing a provider with a candidate API key."""

    valid: bool
    error: str | None = None
    is_quota_error: bool = False


@dataclass(frozen=True)
class ProviderUsage:
    """Aggregated usage for one provider/endpoint pair."""

    provider: str
    endpoint: str
    requests: int
    tokens: int
    cost: Decimal


@dataclass(frozen=True)
class DailyUsage:
    """Requests and tokens for one calendar day (UTC)."""

    date: str
    requests: int
    tokens: int


@dataclass(frozen=True)
class UsageSummary:
    """Usage statistics for a period."""

    period_days: int
    total_requests: int
    total_tokens: int
    estimated_cost: Decimal
    by_provider: list[ProviderUsage]
    daily: list[DailyUsage] = field(default_factory=list)


@dataclass(frozen=True)
class UsageRecord:
    """One row of the AI usage log."""

    user_id: UUID
    provider: str
    model: str
    endpoint: str
    tokens: int
    cost_micros: int
    duration_ms: int
    success: bool
    is_trial: bool
    error: str | None = None


# ============================================================================
# Side channels
# ============================================================================


@dataclass(frozen=True)
class AuditEvent:
    """An immutable audit trail entry."""

    user_id: UUID | None
    action: str
    resource: str
    resource_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class EmailResult:
    """Result of handing an email to the delivery provider."""

    success: bool
    message_id: str | None = None
    error: str | None = None
