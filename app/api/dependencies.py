"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Services sharing a request get the same write session. Process-wide
collaborators (HTTP clients, email sender, side-channel writers) are created
once and closed on shutdown.
"""

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_read_db, get_write_db, get_write_session_factory
from app.exceptions import AuthError
from app.models.domain import AccessClaims
from app.services.ai_proxy import MeteredAIProxyRouter
from app.services.audit import AuditLogWriter, UsageLogWriter
from app.services.auth import AuthService
from app.services.email import EmailSender, EmailService, ResendEmailSender, build_email_sender
from app.services.encryption import VerificationCodeGenerator, build_code_generator
from app.services.providers import ProviderClient
from app.services.tokens import TokenService
from app.services.trial_ledger import TrialCreditLedger
from app.services.verification import VerificationCodeStore
from app.services.vault import CredentialVault

logger = get_logger(__name__)

# Bearer token scheme for access tokens
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RequestContext:
    """Client details recorded on sessions and audit entries."""

    ip_address: str | None
    user_agent: str | None


# ============================================================================
# Process-wide collaborators
# ============================================================================

_code_generator: VerificationCodeGenerator | None = None
_email_sender: EmailSender | None = None
_audit_writer: AuditLogWriter | None = None
_usage_writer: UsageLogWriter | None = None
_provider_client: ProviderClient | None = None


def get_code_generator() -> VerificationCodeGenerator:
    """Get or create the verification code generator."""
    global _code_generator
    if _code_generator is None:
        _code_generator = build_code_generator(settings)
    return _code_generator


def get_email_service() -> EmailService:
    """Email service over the shared sender."""
    global _email_sender
    if _email_sender is None:
        _email_sender = build_email_sender(settings)
    return EmailService(_email_sender, settings)


def get_audit_writer() -> AuditLogWriter:
    """Get or create the audit log writer (own sessions, own commits)."""
    global _audit_writer
    if _audit_writer is None:
        _audit_writer = AuditLogWriter(get_write_session_factory())
    return _audit_writer


def get_usage_writer() -> UsageLogWriter:
    """Get or create the AI usage log writer."""
    global _usage_writer
    if _usage_writer is None:
        _usage_writer = UsageLogWriter(get_write_session_factory())
    return _usage_writer


def get_provider_client() -> ProviderClient:
    """Get or create the provider HTTP client."""
    global _provider_client
    if _provider_client is None:
        _provider_client = ProviderClient(timeout=settings.provider_timeout_seconds)
    return _provider_client


async def close_clients() -> None:
    """Close shared HTTP clients (for graceful shutdown)."""
    global _email_sender, _provider_client
    if _provider_client is not None:
        await _provider_client.close()
        _provider_client = None
    if isinstance(_email_sender, ResendEmailSender):
        await _email_sender.close()
    _email_sender = None


# ============================================================================
# Request context and authentication
# ============================================================================


def get_request_context(request: Request) -> RequestContext:
    """Client IP (first X-Forwarded-For hop when proxied) and user agent."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address: str | None = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return RequestContext(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


def get_token_service(db: AsyncSession = Depends(get_write_db)) -> TokenService:
    """Token service bound to the request's write session."""
    return TokenService(db)


async def get_current_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
) -> AccessClaims:
    """
    FastAPI dependency to validate the access token from the Authorization header.

    Accepts: Authorization: Bearer {access_token}

    Raises:
        AuthError: Header missing
        TokenExpiredError: Token past expiry
        TokenInvalidError: Bad signature, wrong type or malformed
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("Authorization header required")
    return TokenService(db).verify_access_token(credentials.credentials)


async def get_current_user_id(claims: AccessClaims = Depends(get_current_claims)) -> UUID:
    """Authenticated user id."""
    return claims.user_id


# ============================================================================
# Services
# ============================================================================


def get_vault(db: AsyncSession = Depends(get_write_db)) -> CredentialVault:
    """Credential vault bound to the request's write session."""
    return CredentialVault(db, get_audit_writer())


def get_ledger(db: AsyncSession = Depends(get_write_db)) -> TrialCreditLedger:
    """Trial credit ledger bound to the request's write session."""
    return TrialCreditLedger(db)


def get_auth_service(db: AsyncSession = Depends(get_write_db)) -> AuthService:
    """Session orchestrator with all collaborators on one write session."""
    audit = get_audit_writer()
    return AuthService(
        session=db,
        codes=VerificationCodeStore(db, get_code_generator()),
        tokens=TokenService(db),
        vault=CredentialVault(db, audit),
        ledger=TrialCreditLedger(db),
        email=get_email_service(),
        audit=audit,
    )


def get_ai_router(db: AsyncSession = Depends(get_write_db)) -> MeteredAIProxyRouter:
    """AI proxy router bound to the request's write session."""
    return MeteredAIProxyRouter(
        session=db,
        vault=CredentialVault(db, get_audit_writer()),
        ledger=TrialCreditLedger(db),
        client=get_provider_client(),
        usage_log=get_usage_writer(),
    )


def get_usage_router(db: AsyncSession = Depends(get_read_db)) -> MeteredAIProxyRouter:
    """AI proxy router on the read replica, for usage reporting only."""
    return MeteredAIProxyRouter(
        session=db,
        vault=CredentialVault(db, get_audit_writer()),
        ledger=TrialCreditLedger(db),
        client=get_provider_client(),
        usage_log=get_usage_writer(),
    )
