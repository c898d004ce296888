"""
Verification Code Store - One-time email codes per (email, purpose).

State machine per (email, purpose): none -> issued -> {verified | expired}.

Consumption is a single conditional UPDATE, so two concurrent verifications
of the same code cannot both succeed.
"""

from datetime import datetime, timedelta

from sqlalchemy import delete, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import User, VerificationCode, ensure_utc, utc_now
from app.exceptions import InvalidOrExpiredCodeError
from app.models.api import VerificationPurpose
from app.models.domain import CodeRequestResult, VerifiedCode, normalize_email
from app.services.encryption import VerificationCodeGenerator

logger = get_logger(__name__)


class VerificationCodeStore:
    """Issues, consumes and purges verification codes."""

    def __init__(self, session: AsyncSession, generator: VerificationCodeGenerator) -> None:
        self.session = session
        self.generator = generator

    async def request_code(
        self, email: str, purpose: VerificationPurpose = VerificationPurpose.LOGIN
    ) -> CodeRequestResult:
        """
        Issue a fresh code, replacing any earlier code for the same pair.

        The returned code is for the email sender only; it must not reach the
        HTTP response.
        """
        normalized = normalize_email(email)

        user_id = (
            await self.session.execute(select(User.id).where(User.email == normalized))
        ).scalar_one_or_none()

        await self.session.execute(
            delete(VerificationCode).where(
                VerificationCode.email == normalized,
                VerificationCode.purpose == purpose.value,
            )
        )

        expires_at = utc_now() + timedelta(minutes=settings.verification_code_ttl_minutes)
        code = self.generator.generate()
        self.session.add(
            VerificationCode(
                email=normalized,
                user_id=user_id,
                code=code,
                purpose=purpose.value,
                expires_at=expires_at,
            )
        )
        await self.session.commit()

        logger.info(
            "verification_code_issued",
            purpose=purpose.value,
            user_exists=user_id is not None,
        )

        return CodeRequestResult(
            email=normalized,
            user_exists=user_id is not None,
            code=code,
            expires_at=expires_at,
        )

    async def verify_code(
        self,
        email: str,
        code: str,
        purpose: VerificationPurpose | None = None,
    ) -> VerifiedCode:
        """
        Consume a code exactly once.

        Raises:
            InvalidOrExpiredCodeError: Unknown, already used, or expired
        """
        normalized = normalize_email(email)
        now = utc_now()

        conditions = [
            VerificationCode.email == normalized,
            VerificationCode.code == code,
            VerificationCode.used_at.is_(None),
            VerificationCode.expires_at > now,
        ]
        if purpose is not None:
            conditions.append(VerificationCode.purpose == purpose.value)

        # Mark only the newest candidate so a code shared by two purposes
        # is consumed once.
        candidate = (
            select(VerificationCode.id)
            .where(*conditions)
            .order_by(VerificationCode.created_at.desc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = (
            update(VerificationCode)
            .where(VerificationCode.id == candidate, VerificationCode.used_at.is_(None))
            .values(used_at=now)
            .returning(VerificationCode.purpose)
            .execution_options(synchronize_session=False)
        )
        consumed_purpose = (await self.session.execute(stmt)).scalar_one_or_none()
        await self.session.commit()

        if consumed_purpose is None:
            logger.info("verification_code_rejected")
            raise InvalidOrExpiredCodeError()

        logger.info("verification_code_consumed", purpose=consumed_purpose)
        return VerifiedCode(
            email=normalized,
            purpose=VerificationPurpose(consumed_purpose),
            used_at=now,
        )

    async def has_recent_verification(self, email: str, window_minutes: int) -> bool:
        """True if a code for this email was consumed and expired no earlier than the window."""
        cutoff = utc_now() - timedelta(minutes=window_minutes)
        stmt = select(
            exists().where(
                VerificationCode.email == normalize_email(email),
                VerificationCode.used_at.is_not(None),
                VerificationCode.expires_at > cutoff,
            )
        )
        return bool((await self.session.execute(stmt)).scalar())

    async def purge_expired(self, older_than: datetime) -> int:
        """Delete codes that expired before the cutoff. Returns rows deleted."""
        result = await self.session.execute(
            delete(VerificationCode)
            .where(VerificationCode.expires_at < ensure_utc(older_than))
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        deleted = result.rowcount or 0
        logger.info("verification_codes_purged", deleted=deleted)
        return deleted
