"""
Token Service - Access token signing and refresh token lifecycle.

SECURITY: This is a critical security component.
- Access tokens are HS256 JWTs, valid for ACCESS_TOKEN_TTL_MINUTES
- Refresh tokens are opaque random values; only their SHA-256 is stored
- With rotation on, each refresh token is single-use; presenting a rotated
  token again revokes every session of that user
- Revocation is idempotent: revoking twice changes nothing the second time
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import jwt
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import RefreshToken, User, ensure_utc, utc_now
from app.exceptions import (
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenReuseError,
    RefreshTokenRevokedError,
    TokenExpiredError,
    TokenInvalidError,
)
from app.models.domain import AccessClaims, RefreshResult, TokenPair
from app.services.encryption import generate_secure_token, hash_token

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenService:
    """Issues, verifies, refreshes and revokes tokens."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.clock = clock

    # ========================================================================
    # Access tokens
    # ========================================================================

    def create_access_token(self, user_id: UUID, email: str) -> tuple[str, datetime]:
        """Sign an access token. Returns the token and its expiry."""
        issued_at = self.clock()
        expires_at = issued_at + timedelta(minutes=settings.access_token_ttl_minutes)
        payload = {
            "sub": str(user_id),
            "id": str(user_id),
            "email": email,
            "type": ACCESS_TOKEN_TYPE,
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        return token, expires_at

    def verify_access_token(self, token: str) -> AccessClaims:
        """
        Verify signature and expiry of an access token.

        Raises:
            TokenExpiredError: Signature valid but past expiry
            TokenInvalidError: Malformed, wrong signature, or not an access token
        """
        try:
            payload = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError() from e
        except jwt.InvalidTokenError as e:
            raise TokenInvalidError() from e

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenInvalidError()

        try:
            user_id = UUID(str(payload["sub"]))
        except ValueError as e:
            raise TokenInvalidError() from e

        return AccessClaims(
            user_id=user_id,
            email=str(payload.get("email", "")),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=UTC),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=UTC),
        )

    # ========================================================================
    # Refresh tokens
    # ========================================================================

    async def issue_token_pair(
        self,
        user: User,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Issue an access token plus a persisted refresh token."""
        access_token, access_expires_at = self.create_access_token(user.id, user.email)
        refresh_token, row = self._new_refresh_token(user.id, ip_address, user_agent)
        self.session.add(row)
        await self.session.commit()

        logger.info("token_pair_issued", user_id=str(user.id))
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=row.expires_at,
        )

    async def refresh(
        self,
        refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshResult:
        """
        Exchange a refresh token for a new access token.

        With rotation enabled the presented token is revoked and replaced.

        Raises:
            RefreshTokenNotFoundError: Unknown token or its user is gone
            RefreshTokenReuseError: Token was already rotated; all sessions revoked
            RefreshTokenRevokedError: Token was revoked
            RefreshTokenExpiredError: Token is past its expiry
        """
        stored = await self._find_by_value(refresh_token)
        if stored is None:
            raise RefreshTokenNotFoundError()

        if stored.revoked_at is not None:
            if stored.replaced_by_id is not None:
                revoked = await self.revoke_all(stored.user_id)
                logger.warning(
                    "refresh_token_reuse_detected",
                    user_id=str(stored.user_id),
                    token_id=str(stored.id),
                    sessions_revoked=revoked,
                )
                raise RefreshTokenReuseError(stored.user_id)
            raise RefreshTokenRevokedError()

        now = self.clock()
        if ensure_utc(stored.expires_at) <= now:
            raise RefreshTokenExpiredError()

        user = await self.session.get(User, stored.user_id)
        if user is None:
            raise RefreshTokenNotFoundError()

        access_token, _ = self.create_access_token(user.id, user.email)

        if not settings.refresh_token_rotation:
            return RefreshResult(user_id=user.id, access_token=access_token, refresh_token=None)

        new_value, new_row = self._new_refresh_token(user.id, ip_address, user_agent)
        self.session.add(new_row)
        await self.session.flush()

        # Claim the old token; a concurrent refresh that got there first wins.
        result = await self.session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == stored.id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now, replaced_by_id=new_row.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise RefreshTokenRevokedError()

        await self.session.commit()
        logger.info(
            "refresh_token_rotated",
            user_id=str(user.id),
            old_token_id=str(stored.id),
            new_token_id=str(new_row.id),
        )
        return RefreshResult(user_id=user.id, access_token=access_token, refresh_token=new_value)

    async def revoke(self, refresh_token: str, user_id: UUID) -> int:
        """Revoke one of the user's refresh tokens. Unknown or revoked tokens are a no-op."""
        result = await self.session.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == hash_token(refresh_token),
                RefreshToken.user_id == user_id,
                RefreshToken.revoked_at.is_(None),
            )
            .values(revoked_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def revoke_all(self, user_id: UUID) -> int:
        """Revoke every live refresh token of a user."""
        result = await self.session.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        revoked = result.rowcount or 0
        logger.info("refresh_tokens_revoked_all", user_id=str(user_id), revoked=revoked)
        return revoked

    async def purge_expired(self, older_than: datetime) -> int:
        """Delete refresh tokens that expired before the cutoff."""
        result = await self.session.execute(
            delete(RefreshToken)
            .where(RefreshToken.expires_at < ensure_utc(older_than))
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        deleted = result.rowcount or 0
        logger.info("refresh_tokens_purged", deleted=deleted)
        return deleted

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _new_refresh_token(
        self, user_id: UUID, ip_address: str | None, user_agent: str | None
    ) -> tuple[str, RefreshToken]:
        value = generate_secure_token(settings.refresh_token_bytes)
        row = RefreshToken(
            id=uuid4(),
            token_hash=hash_token(value),
            user_id=user_id,
            expires_at=self.clock() + timedelta(days=settings.refresh_token_ttl_days),
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
        )
        return value, row

    async def _find_by_value(self, refresh_token: str) -> RefreshToken | None:
        stmt = (
            select(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(refresh_token))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
