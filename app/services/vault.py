"""
Credential Vault - A user's third-party API key, encrypted at rest.

The (provider, ciphertext, iv) triple is always written and cleared in one
UPDATE, so the pair invariant on the users table holds between statements.
Plaintext keys are only ever returned to the caller for one outbound call.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import User, utc_now
from app.exceptions import (
    CredentialNotConfiguredError,
    DecryptionError,
    UserNotFoundError,
    ValidationError,
)
from app.models.api import AIProvider
from app.models.domain import ApiKeyStatus, AuditEvent, DecryptedCredential, from_micros
from app.services.audit import AuditLogWriter
from app.services.encryption import decrypt, encrypt

logger = get_logger(__name__)


def parse_provider(provider: str) -> AIProvider:
    """Map a provider name onto the supported set."""
    try:
        return AIProvider(provider.strip().lower())
    except ValueError as e:
        raise ValidationError("Invalid provider") from e


class CredentialVault:
    """Stores, reads and clears encrypted provider keys."""

    def __init__(self, session: AsyncSession, audit: AuditLogWriter) -> None:
        self.session = session
        self.audit = audit

    async def save(
        self,
        user_id: UUID,
        provider: str,
        api_key: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AIProvider:
        """
        Encrypt and store a key, replacing any previous one.

        Raises:
            ValidationError: Unknown provider or blank key
            UserNotFoundError: No such user
        """
        selected = parse_provider(provider)
        api_key = api_key.strip()
        if not api_key:
            raise ValidationError("API key is required")

        secret = encrypt(api_key, settings.encryption_key)
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                api_provider=selected.value,
                api_key_encrypted=secret.ciphertext,
                api_key_iv=secret.iv,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise UserNotFoundError(user_id)
        await self.session.commit()

        logger.info("api_key_saved", user_id=str(user_id), provider=selected.value)
        await self.audit.record(
            AuditEvent(
                user_id=user_id,
                action="api_key_update",
                resource="user",
                resource_id=str(user_id),
                metadata={"provider": selected.value},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        return selected

    async def get_decrypted(self, user_id: UUID) -> DecryptedCredential:
        """
        Decrypt the user's key.

        Raises:
            CredentialNotConfiguredError: No key stored
            DecryptionError: Stored ciphertext failed authentication
        """
        row = (
            await self.session.execute(
                select(User.api_provider, User.api_key_encrypted, User.api_key_iv).where(
                    User.id == user_id
                )
            )
        ).one_or_none()

        if row is None or not row.api_key_encrypted or not row.api_key_iv or not row.api_provider:
            raise CredentialNotConfiguredError()

        try:
            api_key = decrypt(row.api_key_encrypted, row.api_key_iv, settings.encryption_key)
        except DecryptionError:
            logger.error("api_key_decryption_failed", user_id=str(user_id))
            raise

        return DecryptedCredential(provider=AIProvider(row.api_provider), api_key=api_key)

    async def remove(
        self,
        user_id: UUID,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Clear the stored key. Removing an absent key is a no-op."""
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                api_provider=None,
                api_key_encrypted=None,
                api_key_iv=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise UserNotFoundError(user_id)
        await self.session.commit()

        logger.info("api_key_removed", user_id=str(user_id))
        await self.audit.record(
            AuditEvent(
                user_id=user_id,
                action="api_key_remove",
                resource="user",
                resource_id=str(user_id),
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    async def status(self, user_id: UUID) -> ApiKeyStatus:
        """What the settings page shows about the user's key and trial balance."""
        row = (
            await self.session.execute(
                select(
                    User.api_provider,
                    User.api_key_encrypted,
                    User.use_trial_mode,
                    User.trial_credits_micros,
                    User.trial_started_at,
                ).where(User.id == user_id)
            )
        ).one_or_none()
        if row is None:
            raise UserNotFoundError(user_id)

        return ApiKeyStatus(
            has_api_key=row.api_key_encrypted is not None,
            provider=row.api_provider,
            use_trial_mode=row.use_trial_mode,
            trial_credits=from_micros(row.trial_credits_micros),
            trial_started_at=row.trial_started_at,
        )
