"""
Tests for the session orchestrator.

All collaborators are real except email delivery and the audit writer.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    ConflictError,
    EmailDeliveryError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredCodeError,
    RefreshTokenRevokedError,
    ValidationError,
)
from app.models.api import VerificationPurpose
from app.models.domain import EmailResult
from app.services.auth import AuthService
from app.services.email import EmailService
from app.services.encryption import FixedCodeGenerator
from app.services.tokens import TokenService
from app.services.trial_ledger import TrialCreditLedger
from app.services.vault import CredentialVault
from app.services.verification import VerificationCodeStore

CODE = "123456"
PASSWORD = "correct horse battery"


@pytest.fixture
def email_sender() -> MagicMock:
    """Sender that accepts every email."""
    sender = MagicMock()
    sender.send = AsyncMock(return_value=EmailResult(success=True, message_id="msg_1"))
    return sender


def build_service(db: AsyncSession, email_sender, audit_writer, config=settings) -> AuthService:
    return AuthService(
        db,
        VerificationCodeStore(db, FixedCodeGenerator(CODE)),
        TokenService(db),
        CredentialVault(db, audit_writer),
        TrialCreditLedger(db),
        EmailService(email_sender, config),
        audit_writer,
        config=config,
    )


@pytest.fixture
def service(db: AsyncSession, email_sender, audit_writer) -> AuthService:
    """Auth service on the SQLite session."""
    return build_service(db, email_sender, audit_writer)


def audited_actions(audit_writer) -> list[str]:
    return [call.args[0].action for call in audit_writer.record.await_args_list]


class TestRequestCode:
    """Issuing and emailing codes."""

    @pytest.mark.asyncio
    async def test_code_is_emailed(self, service, email_sender):
        """The code goes out by email with a purpose-specific subject."""
        result = await service.request_code("New@Example.com")

        assert result.email == "new@example.com"
        to, subject, html = email_sender.send.await_args.args
        assert to == "new@example.com"
        assert subject == "Your Relativit login code"
        assert CODE in html

    @pytest.mark.asyncio
    async def test_invalid_email(self, service, email_sender):
        """Implausible addresses are rejected before anything is stored."""
        with pytest.raises(ValidationError):
            await service.request_code("not-an-email")
        email_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delivery_failure_tolerated_outside_production(self, service, email_sender):
        """In development a failed send still returns the issued code."""
        email_sender.send.return_value = EmailResult(success=False, error="HTTP 500")
        result = await service.request_code("a@example.com")
        assert result.code == CODE

    @pytest.mark.asyncio
    async def test_delivery_failure_raises_in_production(
        self, db: AsyncSession, email_sender, audit_writer
    ):
        """In production a failed send is an error."""
        config = settings.model_copy(update={"environment": "production"})
        service = build_service(db, email_sender, audit_writer, config)
        email_sender.send.return_value = EmailResult(success=False, error="HTTP 403")

        with pytest.raises(EmailDeliveryError, match="HTTP 403"):
            await service.request_code("a@example.com")


class TestVerifyCode:
    """Code login and new-user verification."""

    @pytest.mark.asyncio
    async def test_new_email(self, service):
        """An unregistered email is verified but no session is started."""
        await service.request_code("new@example.com")
        outcome = await service.verify_code("new@example.com", f" {CODE} ")

        assert outcome.status == "new_user"
        assert outcome.email == "new@example.com"
        assert outcome.session is None

    @pytest.mark.asyncio
    async def test_existing_user_is_logged_in(self, service, make_user, audit_writer):
        """A registered email gets tokens and a login audit entry."""
        user = await make_user(email="ada@example.com")
        await service.request_code("ada@example.com")

        outcome = await service.verify_code("ada@example.com", CODE, "10.0.0.1", "pytest")

        assert outcome.status == "existing_user"
        assert outcome.session is not None
        assert outcome.session.user.id == user.id
        assert outcome.session.user.last_login_at is not None
        claims = service.tokens.verify_access_token(outcome.session.access_token)
        assert claims.user_id == user.id

        event = audit_writer.record.await_args.args[0]
        assert event.action == "login"
        assert event.metadata == {"method": "verification_code"}
        assert event.ip_address == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_wrong_code(self, service):
        """A wrong code is rejected."""
        await service.request_code("a@example.com")
        with pytest.raises(InvalidOrExpiredCodeError):
            await service.verify_code("a@example.com", "000000")


class TestRegister:
    """Account creation."""

    @pytest.mark.asyncio
    async def test_register_after_verification(self, service, email_sender, audit_writer):
        """A verified email can register and is logged in immediately."""
        await service.request_code("new@example.com", VerificationPurpose.EMAIL_VERIFICATION)
        await service.verify_code("new@example.com", CODE)

        session = await service.register("new@example.com", "  Grace  ", PASSWORD)

        assert session.user.email == "new@example.com"
        assert session.user.name == "Grace"
        assert session.user.email_verified is True
        assert session.user.has_api_key is False
        assert session.user.trial_credits == Decimal("0")
        assert session.refresh_token

        subjects = [call.args[1] for call in email_sender.send.await_args_list]
        assert "Welcome to Relativit" in subjects
        assert audited_actions(audit_writer) == ["register"]

    @pytest.mark.asyncio
    async def test_register_without_verification(self, service):
        """Skipping verification is refused."""
        with pytest.raises(EmailNotVerifiedError):
            await service.register("new@example.com", "Grace", PASSWORD)

    @pytest.mark.asyncio
    async def test_register_existing_email(self, service, make_user):
        """A second account for the same email is a conflict."""
        await make_user(email="ada@example.com")
        await service.request_code("ada@example.com")
        await service.codes.verify_code("ada@example.com", CODE)

        with pytest.raises(ConflictError):
            await service.register("ADA@example.com", "Ada", PASSWORD)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("name", "password", "message"),
        [("A", PASSWORD, "Name"), ("Grace", "short", "Password")],
    )
    async def test_register_validation(self, service, name: str, password: str, message: str):
        """Short names and passwords are rejected."""
        with pytest.raises(ValidationError, match=message):
            await service.register("new@example.com", name, password)

    @pytest.mark.asyncio
    async def test_welcome_email_failure_does_not_fail_registration(
        self, service, email_sender
    ):
        """The welcome email is best effort."""
        await service.request_code("new@example.com")
        await service.verify_code("new@example.com", CODE)
        email_sender.send.return_value = EmailResult(success=False, error="HTTP 500")

        session = await service.register("new@example.com", "Grace", PASSWORD)
        assert session.access_token


class TestLoginAndRefresh:
    """Password login and token refresh."""

    @pytest.mark.asyncio
    async def test_login(self, service, make_user):
        """Correct credentials start a session."""
        user = await make_user()
        session = await service.login("Ada@Example.com", PASSWORD)
        assert session.user.id == user.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("email", "password"),
        [("ada@example.com", "wrong password"), ("nobody@example.com", PASSWORD)],
    )
    async def test_login_failures_are_indistinguishable(
        self, service, make_user, email: str, password: str
    ):
        """Unknown email and wrong password give the same error."""
        await make_user()
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await service.login(email, password)
        assert str(exc_info.value) == "Invalid email or password"

    @pytest.mark.asyncio
    async def test_passwordless_account_cannot_password_login(self, service, make_user):
        """Accounts created without a password only log in by code."""
        await make_user(password=None)
        with pytest.raises(InvalidCredentialsError):
            await service.login("ada@example.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_refresh_returns_user(self, service, make_user):
        """Refresh yields a new access token and the sanitized user."""
        user = await make_user()
        session = await service.login("ada@example.com", PASSWORD)

        refreshed = await service.refresh(session.refresh_token)

        assert refreshed.user.id == user.id
        assert refreshed.refresh_token != session.refresh_token


class TestLogout:
    """Ending sessions."""

    @pytest.mark.asyncio
    async def test_logout_revokes_token(self, service, make_user, audit_writer):
        """The presented refresh token stops working."""
        user = await make_user()
        session = await service.login("ada@example.com", PASSWORD)

        await service.logout(user.id, session.refresh_token)

        with pytest.raises(RefreshTokenRevokedError):
            await service.refresh(session.refresh_token)
        assert audit_writer.record.await_args.args[0].metadata == {"revoked": 1}

    @pytest.mark.asyncio
    async def test_logout_without_token(self, service, make_user):
        """Logging out without a refresh token is accepted."""
        user = await make_user()
        await service.logout(user.id)

    @pytest.mark.asyncio
    async def test_logout_all(self, service, make_user):
        """Every session is revoked."""
        user = await make_user()
        await service.login("ada@example.com", PASSWORD)
        await service.login("ada@example.com", PASSWORD)

        assert await service.logout_all(user.id) == 2


class TestProfileAndPassword:
    """Profile edits and password changes."""

    @pytest.mark.asyncio
    async def test_update_profile(self, service, make_user):
        """Name and avatar change; omitted fields stay."""
        user = await make_user()
        profile = await service.update_profile(user.id, avatar="https://img.example/a.png")
        assert profile.name == "Ada Lovelace"
        assert profile.avatar == "https://img.example/a.png"

        profile = await service.update_profile(user.id, name=" Ada ")
        assert profile.name == "Ada"
        assert profile.avatar == "https://img.example/a.png"

    @pytest.mark.asyncio
    async def test_change_password(self, service, make_user, audit_writer):
        """The new password works, the old sessions do not."""
        user = await make_user()
        session = await service.login("ada@example.com", PASSWORD)

        await service.change_password(user.id, PASSWORD, "new secret password")

        with pytest.raises(RefreshTokenRevokedError):
            await service.refresh(session.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await service.login("ada@example.com", PASSWORD)
        assert await service.login("ada@example.com", "new secret password")
        assert "password_change" in audited_actions(audit_writer)

    @pytest.mark.asyncio
    async def test_change_password_wrong_current(self, service, make_user):
        """A wrong current password is a validation error."""
        user = await make_user()
        with pytest.raises(ValidationError, match="Current password"):
            await service.change_password(user.id, "not the password", "new secret password")

    @pytest.mark.asyncio
    async def test_change_password_too_short(self, service, make_user):
        """The new password must meet the minimum length."""
        user = await make_user()
        with pytest.raises(ValidationError, match="New password"):
            await service.change_password(user.id, PASSWORD, "short")


class TestSettings:
    """Key and trial settings through the orchestrator."""

    @pytest.mark.asyncio
    async def test_enable_trial_audits_once(self, service, make_user, audit_writer):
        """Only the first activation is audited."""
        user = await make_user()

        first = await service.enable_trial_mode(user.id)
        second = await service.enable_trial_mode(user.id)

        assert first.already_enabled is False
        assert second.already_enabled is True
        assert audited_actions(audit_writer) == ["trial_mode_enabled"]

    @pytest.mark.asyncio
    async def test_trial_user_counts_as_having_key(self, service, make_user):
        """The profile reports has_api_key for trial users."""
        user = await make_user()
        await service.enable_trial_mode(user.id)
        profile = await service.get_current_user(user.id)
        assert profile.has_api_key is True
        assert profile.trial_credits == Decimal("0.50")

    @pytest.mark.asyncio
    async def test_api_key_round_trip(self, service, make_user):
        """Save, inspect and remove a key."""
        user = await make_user()

        await service.save_api_key(user.id, "openai", "sk-own")
        status = await service.get_api_key_status(user.id)
        assert (status.has_api_key, status.provider) == (True, "openai")

        await service.remove_api_key(user.id)
        status = await service.get_api_key_status(user.id)
        assert (status.has_api_key, status.provider) == (False, None)
