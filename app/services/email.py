"""
Email Delivery - Verification codes and welcome messages.

Delivery itself is an external collaborator behind the EmailSender contract:
send(to, subject, html) -> EmailResult. Senders never raise; the caller
decides whether a failed send matters.
"""

from datetime import UTC, datetime
from html import escape
from typing import Protocol

import httpx
from structlog import get_logger

from app.config import Settings, settings
from app.models.api import VerificationPurpose
from app.models.domain import EmailResult

logger = get_logger(__name__)

VERIFICATION_SUBJECTS = {
    VerificationPurpose.LOGIN: "Your Relativit login code",
    VerificationPurpose.EMAIL_VERIFICATION: "Verify your email - Relativit",
    VerificationPurpose.PASSWORD_RESET: "Reset your password - Relativit",
}

VERIFICATION_ACTIONS = {
    VerificationPurpose.LOGIN: "sign in to",
    VerificationPurpose.EMAIL_VERIFICATION: "verify your email for",
    VerificationPurpose.PASSWORD_RESET: "reset your password for",
}


class EmailSender(Protocol):
    """Hands a rendered email to a delivery provider."""

    async def send(self, to: str, subject: str, html: str) -> EmailResult:
        """Send one email. Must not raise for delivery failures."""
        ...


class ResendEmailSender:
    """Delivers through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_url: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=15.0)
        return self._http_client

    async def send(self, to: str, subject: str, html: str) -> EmailResult:
        try:
            response = await self.http_client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.from_address, "to": [to], "subject": subject, "html": html},
            )
        except httpx.HTTPError as e:
            logger.error("email_send_failed", subject=subject, error_type=type(e).__name__)
            return EmailResult(success=False, error=f"Email provider unreachable: {type(e).__name__}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            error = message or f"HTTP {response.status_code}"
            if response.status_code == 403:
                error = f"{error}. Check that EMAIL_FROM uses a domain verified with the provider"
            logger.error("email_send_rejected", subject=subject, status_code=response.status_code)
            return EmailResult(success=False, error=error)

        message_id = body.get("id") if isinstance(body, dict) else None
        logger.info("email_sent", subject=subject, message_id=message_id)
        return EmailResult(success=True, message_id=message_id)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


class LoggingEmailSender:
    """Records that an email would have been sent. For development and tests."""

    async def send(self, to: str, subject: str, html: str) -> EmailResult:
        logger.info("email_not_sent_logging_sender", subject=subject)
        return EmailResult(success=True, message_id=None)


def build_email_sender(config: Settings = settings) -> EmailSender:
    """Resend when an API key is configured, otherwise the logging sender."""
    if config.resend_api_key:
        return ResendEmailSender(
            api_key=config.resend_api_key,
            from_address=config.email_from,
            api_url=config.email_api_url,
        )
    if config.is_production:
        logger.warning("email_sender_not_configured")
    return LoggingEmailSender()


# ============================================================================
# Templates
# ============================================================================


def _layout(title: str, content: str) -> str:
    year = datetime.now(UTC).year
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{escape(title)}</title></head>
<body style="margin:0;padding:40px 20px;font-family:-apple-system,'Segoe UI',Roboto,Arial,sans-serif;background-color:#0a0a0f;color:#cbd5e1;">
  <div style="max-width:480px;margin:0 auto;">
    <h1 style="color:#f8fafc;font-size:24px;text-align:center;">Relativit</h1>
    <div style="background-color:#111827;border-radius:16px;padding:40px;">{content}</div>
    <p style="color:#475569;font-size:12px;text-align:center;">&copy; {year} Relativit. All rights reserved.</p>
  </div>
</body>
</html>"""


def render_verification_email(code: str, purpose: VerificationPurpose, ttl_minutes: int) -> str:
    """HTML body carrying a verification code."""
    action = VERIFICATION_ACTIONS.get(purpose, "access")
    content = f"""
      <p style="text-align:center;">Enter this code to {action} Relativit:</p>
      <div style="background-color:#1e293b;border-radius:12px;padding:24px;text-align:center;">
        <span style="color:#f8fafc;font-size:36px;font-weight:700;letter-spacing:8px;font-family:monospace;">{escape(code)}</span>
      </div>
      <p style="color:#64748b;font-size:14px;text-align:center;">
        This code expires in {ttl_minutes} minutes.<br>
        If you didn't request this code, you can safely ignore this email.
      </p>"""
    return _layout("Verification Code", content)


def render_welcome_email(name: str, app_url: str) -> str:
    """HTML body welcoming a newly registered user."""
    content = f"""
      <h2 style="color:#f8fafc;text-align:center;">Welcome, {escape(name)}!</h2>
      <p style="text-align:center;">Your account has been created. You're ready to start organizing
        your research with AI-powered structured thinking.</p>
      <ul style="color:#94a3b8;font-size:14px;line-height:1.8;">
        <li>Connect your AI provider (Anthropic, OpenAI, or Gemini)</li>
        <li>Create your first workspace</li>
        <li>Start a conversation thread</li>
        <li>Watch your issue tree grow automatically</li>
      </ul>
      <p style="text-align:center;"><a href="{escape(app_url)}" style="color:#8b5cf6;">Open Relativit</a></p>"""
    return _layout("Welcome to Relativit", content)


class EmailService:
    """Renders and sends the emails of the auth flows."""

    def __init__(self, sender: EmailSender, config: Settings = settings) -> None:
        self.sender = sender
        self.config = config

    async def send_verification_code(
        self, email: str, code: str, purpose: VerificationPurpose
    ) -> EmailResult:
        subject = VERIFICATION_SUBJECTS.get(purpose, "Your Relativit verification code")
        html = render_verification_email(code, purpose, self.config.verification_code_ttl_minutes)
        return await self.sender.send(email, subject, html)

    async def send_welcome(self, email: str, name: str) -> EmailResult:
        html = render_welcome_email(name, self.config.app_url)
        return await self.sender.send(email, "Welcome to Relativit", html)
