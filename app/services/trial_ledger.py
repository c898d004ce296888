"""
Trial Credit Ledger - Shared trial balance with an atomic debit.

The balance lives on the user row as integer micro-units. A metered call:

1. reserve(): compare-and-swap a hold of min(balance, TRIAL_HOLD_AMOUNT) out
   of the balance. The read that gates entry and the decrement are one atomic
   unit: the UPDATE only applies if the balance is still the value read.
2. settle(): once the real cost is known, refund the unused part of the hold
   with an atomic increment, or take the excess with a decrement clamped at 0.
3. release(): refund the whole hold when the call failed.

No step is a read-modify-write in application memory, so concurrent calls
cannot overdraw the balance.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import User, utc_now
from app.exceptions import ConcurrencyError, TrialCreditsExhaustedError, UserNotFoundError
from app.models.domain import TrialActivation, from_micros, to_micros
from app.observability.metrics import metrics

logger = get_logger(__name__)


class TrialCreditLedger:
    """Grants, reserves, settles and releases trial credits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def enable_trial(self, user_id: UUID) -> TrialActivation:
        """
        Switch on trial mode and grant the starting balance, once.

        Calling again returns already_enabled=True and leaves the balance alone.
        """
        now = utc_now()
        starting_micros = to_micros(settings.trial_starting_credits)
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.use_trial_mode.is_(False))
            .values(
                use_trial_mode=True,
                trial_credits_micros=starting_micros,
                trial_started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if result.rowcount == 1:
            logger.info(
                "trial_mode_enabled",
                user_id=str(user_id),
                credits_micros=starting_micros,
            )
            return TrialActivation(
                trial_credits=from_micros(starting_micros),
                already_enabled=False,
                trial_started_at=now,
            )

        row = (
            await self.session.execute(
                select(User.trial_credits_micros, User.trial_started_at).where(User.id == user_id)
            )
        ).one_or_none()
        if row is None:
            raise UserNotFoundError(user_id)

        return TrialActivation(
            trial_credits=from_micros(row.trial_credits_micros),
            already_enabled=True,
            trial_started_at=row.trial_started_at,
        )

    async def balance(self, user_id: UUID) -> Decimal:
        """Current trial balance."""
        micros = (
            await self.session.execute(
                select(User.trial_credits_micros).where(User.id == user_id)
            )
        ).scalar_one_or_none()
        if micros is None:
            raise UserNotFoundError(user_id)
        return from_micros(micros)

    async def reserve(self, user_id: UUID) -> Decimal:
        """
        Hold credits for one call.

        Raises:
            TrialCreditsExhaustedError: Trial mode off or balance is zero
            ConcurrencyError: Lost the compare-and-swap too many times
            UserNotFoundError: No such user
        """
        hold_limit = to_micros(settings.trial_hold_amount)

        for attempt in range(1, settings.trial_reserve_max_attempts + 1):
            row = (
                await self.session.execute(
                    select(User.use_trial_mode, User.trial_credits_micros).where(
                        User.id == user_id
                    )
                )
            ).one_or_none()
            if row is None:
                await self.session.rollback()
                raise UserNotFoundError(user_id)

            current = row.trial_credits_micros
            if not row.use_trial_mode or current <= 0:
                await self.session.rollback()
                metrics.record_trial_reservation("exhausted")
                raise TrialCreditsExhaustedError()

            hold = min(current, hold_limit)
            result = await self.session.execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.use_trial_mode.is_(True),
                    User.trial_credits_micros == current,
                )
                .values(trial_credits_micros=current - hold)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()

            if result.rowcount == 1:
                metrics.record_trial_reservation("reserved")
                logger.debug(
                    "trial_credits_reserved",
                    user_id=str(user_id),
                    hold_micros=hold,
                    attempt=attempt,
                )
                return from_micros(hold)

            metrics.record_trial_reservation("contended")

        logger.warning(
            "trial_credits_reserve_contention",
            user_id=str(user_id),
            attempts=settings.trial_reserve_max_attempts,
        )
        raise ConcurrencyError("trial_credits")

    async def settle(self, user_id: UUID, reserved: Decimal, cost: Decimal) -> Decimal:
        """
        Reconcile a hold with the actual cost. Returns the resulting balance.

        The balance never goes below zero; a cost above what was available is
        absorbed rather than recorded as debt.
        """
        reserved_micros = to_micros(reserved)
        cost_micros = to_micros(cost)
        difference = reserved_micros - cost_micros

        if difference > 0:
            await self._refund(user_id, difference)
        elif difference < 0:
            excess = -difference
            await self.session.execute(
                update(User)
                .where(User.id == user_id)
                .values(
                    trial_credits_micros=case(
                        (User.trial_credits_micros > excess, User.trial_credits_micros - excess),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()

        metrics.record_trial_debit(cost_micros)
        remaining = await self.balance(user_id)
        logger.info(
            "trial_credits_settled",
            user_id=str(user_id),
            reserved_micros=reserved_micros,
            cost_micros=cost_micros,
            remaining=str(remaining),
        )
        return remaining

    async def release(self, user_id: UUID, reserved: Decimal) -> None:
        """Return a hold in full after a failed call."""
        micros = to_micros(reserved)
        if micros > 0:
            await self._refund(user_id, micros)
        metrics.record_trial_reservation("released")
        logger.info("trial_credits_released", user_id=str(user_id), reserved_micros=micros)

    async def _refund(self, user_id: UUID, micros: int) -> None:
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(trial_credits_micros=User.trial_credits_micros + micros)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
