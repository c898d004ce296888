"""
Encryption Utility - Authenticated encryption, secure randomness, password hashing.

SECURITY: This is a critical security component.
- Secrets at rest use AES-256-GCM with a fresh random IV per call
- The 16-byte GCM tag is appended to the ciphertext; tampering raises DecryptionError
- Passwords are hashed with Argon2id (per-hash random salt)
- Verification codes come from a generator chosen once, from configuration
"""

import hashlib
import secrets
from typing import Protocol

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from structlog import get_logger

from app.config import Settings
from app.exceptions import DecryptionError
from app.models.domain import EncryptedSecret

logger = get_logger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
VERIFICATION_CODE_DIGITS = 6

_password_hasher = PasswordHasher()


def _derive_key(secret_key: str) -> bytes:
    """Derive a 32-byte AES key from an arbitrary-length secret."""
    return hashlib.sha256(secret_key.encode("utf-8")).digest()


def encrypt(plaintext: str, secret_key: str) -> EncryptedSecret:
    """
    Encrypt a secret with AES-256-GCM.

    Returns hex-encoded ciphertext (tag appended) and the hex-encoded IV.
    """
    iv = secrets.token_bytes(IV_LENGTH)
    ciphertext = AESGCM(_derive_key(secret_key)).encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedSecret(ciphertext=ciphertext.hex(), iv=iv.hex())


def decrypt(ciphertext: str, iv: str, secret_key: str) -> str:
    """
    Decrypt and authenticate a secret produced by encrypt().

    Raises:
        DecryptionError: Tag mismatch, wrong key, malformed or truncated input
    """
    try:
        raw = bytes.fromhex(ciphertext)
        nonce = bytes.fromhex(iv)
    except ValueError as e:
        raise DecryptionError("Stored secret is not valid hex") from e

    if len(nonce) != IV_LENGTH or len(raw) < TAG_LENGTH:
        raise DecryptionError("Stored secret is truncated")

    try:
        plaintext = AESGCM(_derive_key(secret_key)).decrypt(nonce, raw, None)
    except InvalidTag as e:
        raise DecryptionError() from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted secret is not valid UTF-8") from e


def generate_secure_token(byte_length: int = 32) -> str:
    """Generate a hex string from cryptographically secure random bytes."""
    return secrets.token_hex(byte_length)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of an opaque token, used as its lookup key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    """Hash a password with Argon2id."""
    return _password_hasher.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    """
    Verify a password against an Argon2 hash.

    Returns False for a mismatch, a missing hash, or a hash that cannot be parsed.
    """
    if not password_hash:
        return False
    try:
        return _password_hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError):
        logger.warning("password_hash_unverifiable")
        return False


# ============================================================================
# Verification code generators
# ============================================================================


class VerificationCodeGenerator(Protocol):
    """Source of one-time verification codes."""

    def generate(self) -> str:
        """Return a new 6-digit code."""
        ...


class SecureCodeGenerator:
    """Uniformly random 6-digit codes from the OS CSPRNG."""

    def generate(self) -> str:
        return f"{secrets.randbelow(10**VERIFICATION_CODE_DIGITS):0{VERIFICATION_CODE_DIGITS}d}"


class FixedCodeGenerator:
    """
    Always returns the same code.

    Only for demo and local environments; configuration refuses to enable it
    when ENVIRONMENT=production.
    """

    def __init__(self, code: str) -> None:
        if len(code) != VERIFICATION_CODE_DIGITS or not code.isdigit():
            raise ValueError(f"Fixed verification code must be {VERIFICATION_CODE_DIGITS} digits")
        self.code = code
        logger.warning("fixed_verification_code_generator_enabled")

    def generate(self) -> str:
        logger.warning("fixed_verification_code_issued")
        return self.code


def build_code_generator(config: Settings) -> VerificationCodeGenerator:
    """Choose the verification code generator for this deployment."""
    if config.demo_verification_code_enabled:
        return FixedCodeGenerator(config.demo_verification_code)
    return SecureCodeGenerator()
