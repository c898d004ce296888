#!/usr/bin/env python3
"""
Relativit Session Housekeeping

Deletes verification codes and refresh tokens that expired more than
--grace-hours ago. Revoked-but-unexpired refresh tokens are kept so reuse of
a rotated token is still detected until it would have expired anyway.

Usage:
    # Purge with the default 24h grace period (for cron)
    python3 scripts/purge-expired-sessions.py

    # Custom grace period
    python3 scripts/purge-expired-sessions.py --grace-hours 72

Reads DATABASE_URL and the rest of the application settings from the
environment, like the API itself.
"""

import argparse
import asyncio
import sys
from datetime import timedelta

from app.db.models import utc_now
from app.db.session import close_engines, get_write_session_factory
from app.observability import get_logger, setup_logging
from app.services.encryption import SecureCodeGenerator
from app.services.tokens import TokenService
from app.services.verification import VerificationCodeStore

logger = get_logger("purge_expired_sessions")


async def purge(grace_hours: int) -> tuple[int, int]:
    """Returns (codes deleted, refresh tokens deleted)."""
    cutoff = utc_now() - timedelta(hours=grace_hours)
    factory = get_write_session_factory()
    try:
        async with factory() as session:
            codes = await VerificationCodeStore(session, SecureCodeGenerator()).purge_expired(
                cutoff
            )
        async with factory() as session:
            tokens = await TokenService(session).purge_expired(cutoff)
    finally:
        await close_engines()
    return codes, tokens


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired verification codes and refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--grace-hours",
        type=int,
        default=24,
        help="Only delete rows that expired at least this many hours ago (default: 24)",
    )
    args = parser.parse_args()
    if args.grace_hours < 0:
        parser.error("--grace-hours must not be negative")

    setup_logging()
    codes, tokens = asyncio.run(purge(args.grace_hours))
    logger.info(
        "session_purge_complete",
        grace_hours=args.grace_hours,
        verification_codes_deleted=codes,
        refresh_tokens_deleted=tokens,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
