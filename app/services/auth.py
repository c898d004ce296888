"""
Session Orchestrator - The authentication state machine.

Composes the verification code store, token service, credential vault and
trial ledger to drive login, registration, refresh and logout, plus the
account settings operations. Audit events go to the fire-and-forget writer.

Failure messages are deliberately generic where they could reveal whether an
email is registered.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, settings
from app.db.models import User, utc_now
from app.exceptions import (
    AuthError,
    ConflictError,
    EmailDeliveryError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    UserNotFoundError,
    ValidationError,
)
from app.models.api import AIProvider, VerificationPurpose
from app.models.domain import (
    ApiKeyStatus,
    AuditEvent,
    AuthSession,
    CodeRequestResult,
    CodeVerificationOutcome,
    RefreshedSession,
    TrialActivation,
    UserProfile,
    from_micros,
    normalize_email,
)
from app.observability.metrics import metrics
from app.services.audit import AuditLogWriter
from app.services.email import EmailService
from app.services.encryption import hash_password, verify_password
from app.services.tokens import TokenService
from app.services.trial_ledger import TrialCreditLedger
from app.services.verification import VerificationCodeStore
from app.services.vault import CredentialVault

logger = get_logger(__name__)


def to_profile(user: User) -> UserProfile:
    """Sanitize a user row for clients. Trial users count as having a key."""
    return UserProfile(
        id=user.id,
        email=user.email,
        name=user.name,
        avatar=user.avatar,
        email_verified=user.email_verified,
        has_api_key=user.api_key_encrypted is not None or user.use_trial_mode,
        api_provider=user.api_provider,
        use_trial_mode=user.use_trial_mode,
        trial_credits=from_micros(user.trial_credits_micros),
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


class AuthService:
    """Drives the login, registration, refresh and logout flows."""

    def __init__(
        self,
        session: AsyncSession,
        codes: VerificationCodeStore,
        tokens: TokenService,
        vault: CredentialVault,
        ledger: TrialCreditLedger,
        email: EmailService,
        audit: AuditLogWriter,
        config: Settings = settings,
    ) -> None:
        self.session = session
        self.codes = codes
        self.tokens = tokens
        self.vault = vault
        self.ledger = ledger
        self.email = email
        self.audit = audit
        self.config = config

    # ========================================================================
    # Verification code flow
    # ========================================================================

    async def request_code(
        self, email: str, purpose: VerificationPurpose = VerificationPurpose.LOGIN
    ) -> CodeRequestResult:
        """
        Issue a code and email it.

        Raises:
            ValidationError: Email is not plausible
            EmailDeliveryError: Delivery failed in production
        """
        normalized = self._validate_email(email)
        issued = await self.codes.request_code(normalized, purpose)

        sent = await self.email.send_verification_code(issued.email, issued.code, purpose)
        if not sent.success:
            metrics.record_side_channel_failure("email")
            if self.config.is_production:
                logger.error("verification_email_failed", purpose=purpose.value, error=sent.error)
                raise EmailDeliveryError(sent.error or "unknown error")
            logger.warning(
                "verification_email_failed_non_production",
                purpose=purpose.value,
                error=sent.error,
            )

        return issued

    async def verify_code(
        self,
        email: str,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> CodeVerificationOutcome:
        """
        Consume a code. Existing users are logged in; new emails are marked verified.

        Raises:
            InvalidOrExpiredCodeError: Code unknown, used or expired
        """
        try:
            verified = await self.codes.verify_code(email, code.strip())
        except AuthError:
            metrics.record_auth_event("verify_code", False)
            raise

        user = await self._find_by_email(verified.email)
        if user is None:
            metrics.record_auth_event("verify_code", True)
            return CodeVerificationOutcome(status="new_user", email=verified.email)

        auth_session = await self._start_session(
            user, "verification_code", ip_address, user_agent
        )
        metrics.record_auth_event("verify_code", True)
        return CodeVerificationOutcome(
            status="existing_user", email=verified.email, session=auth_session
        )

    # ========================================================================
    # Registration and password login
    # ========================================================================

    async def register(
        self,
        email: str,
        name: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthSession:
        """
        Create an account for a recently verified email.

        Raises:
            ValidationError: Name or password too short
            EmailNotVerifiedError: No verification within the window
            ConflictError: Email already registered
        """
        normalized = self._validate_email(email)
        display_name = self._validate_name(name)
        self._validate_password(password)

        if not await self.codes.has_recent_verification(
            normalized, self.config.registration_verification_window_minutes
        ):
            raise EmailNotVerifiedError()

        if await self._find_by_email(normalized) is not None:
            raise ConflictError("An account with this email already exists")

        now = utc_now()
        user = User(
            email=normalized,
            name=display_name,
            password_hash=hash_password(password),
            email_verified=True,
            email_verified_at=now,
            last_login_at=now,
        )
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            logger.info("registration_conflict", error_type=type(e).__name__)
            raise ConflictError("An account with this email already exists") from e

        pair = await self.tokens.issue_token_pair(user, ip_address, user_agent)
        metrics.record_auth_event("register", True)
        logger.info("user_registered", user_id=str(user.id))

        welcome = await self.email.send_welcome(normalized, display_name)
        if not welcome.success:
            metrics.record_side_channel_failure("email")
            logger.warning("welcome_email_failed", user_id=str(user.id), error=welcome.error)

        await self._audit(user.id, "register", ip_address=ip_address, user_agent=user_agent)
        return AuthSession(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=to_profile(user),
        )

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthSession:
        """
        Password login.

        Raises:
            InvalidCredentialsError: Unknown email, no password set, or wrong password
        """
        user = await self._find_by_email(normalize_email(email))
        if user is None or not verify_password(password, user.password_hash):
            metrics.record_auth_event("login", False)
            logger.info("login_failed")
            raise InvalidCredentialsError()

        auth_session = await self._start_session(user, "password", ip_address, user_agent)
        metrics.record_auth_event("login", True)
        return auth_session

    # ========================================================================
    # Token lifecycle
    # ========================================================================

    async def refresh(
        self,
        refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshedSession:
        """
        Exchange a refresh token.

        Raises:
            RefreshTokenError: Unknown, revoked, reused or expired token
        """
        try:
            result = await self.tokens.refresh(refresh_token, ip_address, user_agent)
        except AuthError:
            metrics.record_auth_event("refresh", False)
            raise

        user = await self._get_user(result.user_id)
        metrics.record_auth_event("refresh", True)
        return RefreshedSession(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            user=to_profile(user),
        )

    async def logout(
        self,
        user_id: UUID,
        refresh_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Revoke the given refresh token (if any). Idempotent."""
        revoked = 0
        if refresh_token:
            revoked = await self.tokens.revoke(refresh_token, user_id)
        await self._audit(
            user_id,
            "logout",
            metadata={"revoked": revoked},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def logout_all(
        self,
        user_id: UUID,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """Revoke every refresh token of the user."""
        revoked = await self.tokens.revoke_all(user_id)
        await self._audit(
            user_id,
            "logout_all",
            metadata={"revoked": revoked},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return revoked

    # ========================================================================
    # Profile
    # ========================================================================

    async def get_current_user(self, user_id: UUID) -> UserProfile:
        """Sanitized profile of the authenticated user."""
        return to_profile(await self._get_user(user_id))

    async def update_profile(
        self,
        user_id: UUID,
        name: str | None = None,
        avatar: str | None = None,
    ) -> UserProfile:
        """Change display name and/or avatar. Omitted fields are left alone."""
        user = await self._get_user(user_id)
        if name is not None:
            user.name = self._validate_name(name)
        if avatar is not None:
            user.avatar = avatar.strip() or None
        await self.session.commit()
        logger.info("profile_updated", user_id=str(user_id))
        return to_profile(user)

    async def change_password(
        self,
        user_id: UUID,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """
        Replace the password and sign out every session.

        Raises:
            ValidationError: Current password wrong or new password too short
        """
        user = await self._get_user(user_id)
        if not verify_password(current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")
        self._validate_password(new_password, label="New password")

        user.password_hash = hash_password(new_password)
        await self.session.commit()

        await self.logout_all(user_id, ip_address, user_agent)
        await self._audit(
            user_id, "password_change", ip_address=ip_address, user_agent=user_agent
        )

    # ========================================================================
    # Settings
    # ========================================================================

    async def save_api_key(
        self,
        user_id: UUID,
        provider: str,
        api_key: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AIProvider:
        """Store the user's provider key (validation is the caller's pre-check)."""
        return await self.vault.save(user_id, provider, api_key, ip_address, user_agent)

    async def get_api_key_status(self, user_id: UUID) -> ApiKeyStatus:
        """Key and trial status for the settings page."""
        return await self.vault.status(user_id)

    async def remove_api_key(
        self,
        user_id: UUID,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Clear the stored key."""
        await self.vault.remove(user_id, ip_address, user_agent)

    async def enable_trial_mode(
        self,
        user_id: UUID,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TrialActivation:
        """Grant the starting trial balance once; repeat calls are no-ops."""
        activation = await self.ledger.enable_trial(user_id)
        if not activation.already_enabled:
            await self._audit(
                user_id,
                "trial_mode_enabled",
                metadata={"credits": str(activation.trial_credits)},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return activation

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _start_session(
        self,
        user: User,
        method: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthSession:
        pair = await self.tokens.issue_token_pair(user, ip_address, user_agent)
        user.last_login_at = utc_now()
        await self.session.commit()

        logger.info("user_logged_in", user_id=str(user.id), method=method)
        await self._audit(
            user.id,
            "login",
            metadata={"method": method},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return AuthSession(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=to_profile(user),
        )

    async def _find_by_email(self, email: str) -> User | None:
        stmt = (
            select(User)
            .where(User.email == email)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_user(self, user_id: UUID) -> User:
        stmt = (
            select(User)
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        user = (await self.session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _audit(
        self,
        user_id: UUID,
        action: str,
        metadata: dict[str, object] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self.audit.record(
            AuditEvent(
                user_id=user_id,
                action=action,
                resource="user",
                resource_id=str(user_id),
                metadata=metadata or {},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    def _validate_email(self, email: str) -> str:
        normalized = normalize_email(email)
        local, _, domain = normalized.partition("@")
        if not local or "." not in domain:
            raise ValidationError("Valid email is required")
        return normalized

    def _validate_name(self, name: str) -> str:
        stripped = name.strip()
        if len(stripped) < self.config.min_name_length:
            raise ValidationError(
                f"Name must be at least {self.config.min_name_length} characters"
            )
        return stripped

    def _validate_password(self, password: str, label: str = "Password") -> None:
        if len(password) < self.config.min_password_length:
            raise ValidationError(
                f"{label} must be at least {self.config.min_password_length} characters"
            )
