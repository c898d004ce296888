"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Each top-level category maps to one HTTP status in app.api.errors; the
``code`` attribute is the machine-readable discriminator clients switch on.
"""

from uuid import UUID


class ServiceError(Exception):
    """Base exception for all service errors."""

    code: str = "INTERNAL_ERROR"


# ============================================================================
# Validation
# ============================================================================


class ValidationError(ServiceError):
    """Raised for bad input. The message is safe to show to the caller."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConflictError(ServiceError):
    """Raised when a resource already exists (e.g. duplicate registration)."""

    code = "CONFLICT"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Authentication
# ============================================================================


class AuthError(ServiceError):
    """Raised when credentials or tokens are invalid. Messages stay generic."""

    code = "AUTH_ERROR"

    def __init__(self, message: str = "Authentication failed") -> None:
        self.message = message
        super().__init__(message)


class TokenExpiredError(AuthError):
    """Raised when an access token is past its expiry."""

    code = "TOKEN_EXPIRED"

    def __init__(self) -> None:
        super().__init__("Access token expired")


class TokenInvalidError(AuthError):
    """Raised when an access token is malformed or its signature does not match."""

    code = "TOKEN_INVALID"

    def __init__(self) -> None:
        super().__init__("Invalid access token")


class InvalidCredentialsError(AuthError):
    """Raised when email/password login fails (never reveals which part)."""

    code = "INVALID_CREDENTIALS"

    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class InvalidOrExpiredCodeError(AuthError):
    """Raised when a verification code is unknown, already used, or expired."""

    code = "INVALID_CODE"

    def __init__(self) -> None:
        super().__init__("Invalid or expired verification code")


class EmailNotVerifiedError(AuthError):
    """Raised when registration is attempted without a recent verification."""

    code = "EMAIL_NOT_VERIFIED"

    def __init__(self) -> None:
        super().__init__("Email not verified. Please start the signup process again.")


class RefreshTokenError(AuthError):
    """Base for refresh token failures."""

    code = "REFRESH_FAILED"


class RefreshTokenNotFoundError(RefreshTokenError):
    """Raised when the refresh token is unknown."""

    def __init__(self) -> None:
        super().__init__("Invalid refresh token")


class RefreshTokenRevokedError(RefreshTokenError):
    """Raised when the refresh token has been revoked."""

    def __init__(self, message: str = "Refresh token has been revoked") -> None:
        super().__init__(message)


class RefreshTokenReuseError(RefreshTokenRevokedError):
    """Raised when an already-rotated refresh token is presented again."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("Refresh token reuse detected; all sessions revoked")


class RefreshTokenExpiredError(RefreshTokenError):
    """Raised when the refresh token is past its expiry."""

    def __init__(self) -> None:
        super().__init__("Refresh token has expired")


# ============================================================================
# Resources
# ============================================================================


class NotFoundError(ServiceError):
    """Raised when a resource is absent or not owned by the caller."""

    code = "NOT_FOUND"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"{resource} not found")


class UserNotFoundError(NotFoundError):
    """Raised when a user record does not exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("User")


# ============================================================================
# Provider credentials
# ============================================================================


class CredentialError(ServiceError):
    """Raised when a provider key is missing or unusable."""

    code = "API_KEY_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CredentialNotConfiguredError(CredentialError):
    """Raised when no usable API key is configured for the user."""

    def __init__(self, message: str = "API key not configured") -> None:
        super().__init__(message)


class TrialCreditsExhaustedError(CredentialError):
    """Raised when trial mode has no credits left to gate a call."""

    code = "TRIAL_CREDITS_EXHAUSTED"

    def __init__(self) -> None:
        super().__init__("Trial credits exhausted. Please add your own API key to continue.")


class UpstreamProviderError(ServiceError):
    """Raised when a third-party AI provider call fails. Never retried."""

    code = "AI_ERROR"

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"{provider} request failed: {message}")


# ============================================================================
# Integrity and infrastructure
# ============================================================================


class DecryptionError(ServiceError):
    """Raised when ciphertext fails authentication (tampering or wrong key)."""

    code = "DECRYPTION_ERROR"

    def __init__(self, message: str = "Stored secret could not be authenticated") -> None:
        self.message = message
        super().__init__(message)


class ConcurrencyError(ServiceError):
    """Raised when concurrent modification detected."""

    code = "CONCURRENCY_ERROR"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class EmailDeliveryError(ServiceError):
    """Raised when a required email could not be sent."""

    code = "EMAIL_DELIVERY_FAILED"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Failed to send email: {message}")
