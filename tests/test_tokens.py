"""
Tests for the token service.

Access token checks are pure; the refresh lifecycle runs against SQLite.
"""

from datetime import timedelta
from uuid import uuid4

import jwt
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import RefreshToken, utc_now
from app.exceptions import (
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenReuseError,
    RefreshTokenRevokedError,
    TokenExpiredError,
    TokenInvalidError,
)
from app.services.encryption import hash_token
from app.services.tokens import TokenService


def _past_clock(minutes: int):
    return lambda: utc_now() - timedelta(minutes=minutes)


def _claims(token_type: str, expires: bool) -> dict:
    claims = {"sub": str(uuid4()), "type": token_type, "iat": utc_now()}
    if expires:
        claims["exp"] = utc_now() + timedelta(minutes=5)
    return claims


class TestAccessTokens:
    """Signing and verification."""

    def test_round_trip_claims(self, db_session):
        """A fresh token verifies and carries the user id and email."""
        service = TokenService(db_session)
        user_id = uuid4()
        token, expires_at = service.create_access_token(user_id, "ada@example.com")

        claims = service.verify_access_token(token)

        assert claims.user_id == user_id
        assert claims.email == "ada@example.com"
        assert claims.expires_at == expires_at.replace(microsecond=0)

    def test_expiry_matches_ttl(self, db_session):
        """Tokens live for ACCESS_TOKEN_TTL_MINUTES."""
        service = TokenService(db_session)
        token, _ = service.create_access_token(uuid4(), "ada@example.com")
        claims = service.verify_access_token(token)
        lifetime = claims.expires_at - claims.issued_at
        assert lifetime == timedelta(minutes=settings.access_token_ttl_minutes)

    def test_expired_token_raises_expired(self, db_session):
        """Past-expiry tokens are distinguishable from invalid ones."""
        token, _ = TokenService(db_session, clock=_past_clock(20)).create_access_token(
            uuid4(), "ada@example.com"
        )
        with pytest.raises(TokenExpiredError) as exc_info:
            TokenService(db_session).verify_access_token(token)
        assert exc_info.value.code == "TOKEN_EXPIRED"

    def test_wrong_secret_is_invalid(self, db_session):
        """Tokens signed with another secret are rejected."""
        token = jwt.encode(
            _claims("access", expires=True),
            "some-other-secret-that-is-at-least-32-characters",
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalidError):
            TokenService(db_session).verify_access_token(token)

    def test_wrong_type_is_invalid(self, db_session):
        """Only access-type tokens are accepted."""
        token = jwt.encode(
            _claims("refresh", expires=True),
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(TokenInvalidError):
            TokenService(db_session).verify_access_token(token)

    def test_missing_expiry_is_invalid(self, db_session):
        """Tokens without exp are rejected."""
        token = jwt.encode(
            _claims("access", expires=False),
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(TokenInvalidError):
            TokenService(db_session).verify_access_token(token)

    def test_garbage_is_invalid(self, db_session):
        """Non-JWT input is rejected."""
        with pytest.raises(TokenInvalidError):
            TokenService(db_session).verify_access_token("not.a.jwt")


class TestRefreshTokens:
    """Issue, refresh, rotate and revoke."""

    @pytest.mark.asyncio
    async def test_only_hash_is_stored(self, db: AsyncSession, make_user):
        """The plaintext refresh token never reaches the database."""
        user = await make_user()
        pair = await TokenService(db).issue_token_pair(user, "127.0.0.1", "pytest")

        rows = (await db.execute(select(RefreshToken))).scalars().all()
        assert len(rows) == 1
        assert rows[0].token_hash == hash_token(pair.refresh_token)
        assert rows[0].token_hash != pair.refresh_token
        assert len(pair.refresh_token) == settings.refresh_token_bytes * 2

    @pytest.mark.asyncio
    async def test_expired_access_then_refresh(self, db: AsyncSession, make_user):
        """An expired access token fails, and the refresh token still gets a new one."""
        user = await make_user()
        stale = TokenService(db, clock=_past_clock(20))
        pair = await stale.issue_token_pair(user)

        service = TokenService(db)
        with pytest.raises(TokenExpiredError):
            service.verify_access_token(pair.access_token)

        result = await service.refresh(pair.refresh_token)

        assert service.verify_access_token(result.access_token).user_id == user.id
        assert result.refresh_token is not None
        assert result.refresh_token != pair.refresh_token

    @pytest.mark.asyncio
    async def test_rotation_marks_old_token(self, db: AsyncSession, make_user):
        """The exchanged token is revoked and points to its replacement."""
        user = await make_user()
        service = TokenService(db)
        pair = await service.issue_token_pair(user)

        result = await service.refresh(pair.refresh_token)

        old = (
            await db.execute(
                select(RefreshToken).where(
                    RefreshToken.token_hash == hash_token(pair.refresh_token)
                )
            )
        ).scalar_one()
        new = (
            await db.execute(
                select(RefreshToken).where(
                    RefreshToken.token_hash == hash_token(result.refresh_token)
                )
            )
        ).scalar_one()
        assert old.revoked_at is not None
        assert old.replaced_by_id == new.id
        assert new.revoked_at is None

    @pytest.mark.asyncio
    async def test_reuse_of_rotated_token_revokes_everything(self, db: AsyncSession, make_user):
        """Presenting a rotated token again kills every session of the user."""
        user = await make_user()
        service = TokenService(db)
        first = await service.issue_token_pair(user)
        other_device = await service.issue_token_pair(user)
        rotated = await service.refresh(first.refresh_token)

        with pytest.raises(RefreshTokenReuseError):
            await service.refresh(first.refresh_token)

        with pytest.raises(RefreshTokenRevokedError):
            await service.refresh(rotated.refresh_token)
        with pytest.raises(RefreshTokenRevokedError):
            await service.refresh(other_device.refresh_token)

    @pytest.mark.asyncio
    async def test_rotation_disabled_keeps_token(self, db: AsyncSession, make_user, monkeypatch):
        """Without rotation the same refresh token keeps working."""
        monkeypatch.setattr(settings, "refresh_token_rotation", False)
        user = await make_user()
        service = TokenService(db)
        pair = await service.issue_token_pair(user)

        first = await service.refresh(pair.refresh_token)
        second = await service.refresh(pair.refresh_token)

        assert first.refresh_token is None
        assert second.refresh_token is None

    @pytest.mark.asyncio
    async def test_unknown_token(self, db: AsyncSession):
        """Tokens that were never issued are rejected."""
        with pytest.raises(RefreshTokenNotFoundError):
            await TokenService(db).refresh("deadbeef")

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, db: AsyncSession, make_user):
        """Refresh tokens past their lifetime are rejected."""
        user = await make_user()
        old_clock = _past_clock(60 * 24 * (settings.refresh_token_ttl_days + 1))
        pair = await TokenService(db, clock=old_clock).issue_token_pair(user)

        with pytest.raises(RefreshTokenExpiredError):
            await TokenService(db).refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, db: AsyncSession, make_user):
        """Revoking twice is harmless and the token stops working."""
        user = await make_user()
        service = TokenService(db)
        pair = await service.issue_token_pair(user)

        assert await service.revoke(pair.refresh_token, user.id) == 1
        assert await service.revoke(pair.refresh_token, user.id) == 0

        with pytest.raises(RefreshTokenRevokedError) as exc_info:
            await service.refresh(pair.refresh_token)
        assert not isinstance(exc_info.value, RefreshTokenReuseError)

    @pytest.mark.asyncio
    async def test_revoke_ignores_other_users_tokens(self, db: AsyncSession, make_user):
        """A user cannot revoke someone else's refresh token."""
        owner = await make_user(email="owner@example.com")
        intruder = await make_user(email="intruder@example.com")
        service = TokenService(db)
        pair = await service.issue_token_pair(owner)

        assert await service.revoke(pair.refresh_token, intruder.id) == 0
        assert (await service.refresh(pair.refresh_token)).access_token

    @pytest.mark.asyncio
    async def test_revoke_all(self, db: AsyncSession, make_user):
        """Every live token of the user is revoked; a repeat revokes none."""
        user = await make_user()
        service = TokenService(db)
        for _ in range(3):
            await service.issue_token_pair(user)

        assert await service.revoke_all(user.id) == 3
        assert await service.revoke_all(user.id) == 0

    @pytest.mark.asyncio
    async def test_purge_expired(self, db: AsyncSession, make_user):
        """Purge removes only tokens that expired before the cutoff."""
        user = await make_user()
        old_clock = _past_clock(60 * 24 * (settings.refresh_token_ttl_days + 5))
        await TokenService(db, clock=old_clock).issue_token_pair(user)
        await TokenService(db).issue_token_pair(user)

        deleted = await TokenService(db).purge_expired(utc_now() - timedelta(days=1))

        assert deleted == 1
        remaining = (await db.execute(select(RefreshToken))).scalars().all()
        assert len(remaining) == 1
