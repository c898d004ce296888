"""
Tests for the trial credit ledger.

The concurrency test runs many reserve/settle cycles in parallel sessions
against one balance and checks that it is never overdrawn.
"""

import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.exceptions import TrialCreditsExhaustedError, UserNotFoundError
from app.services.trial_ledger import TrialCreditLedger


class TestEnableTrial:
    """Granting the starting balance."""

    @pytest.mark.asyncio
    async def test_grants_starting_credits(self, db: AsyncSession, make_user):
        """First activation grants TRIAL_STARTING_CREDITS."""
        user = await make_user()
        activation = await TrialCreditLedger(db).enable_trial(user.id)

        assert activation.already_enabled is False
        assert activation.trial_credits == Decimal("0.50")
        assert activation.trial_started_at is not None

    @pytest.mark.asyncio
    async def test_second_activation_keeps_balance(self, db: AsyncSession, make_user):
        """Enabling again does not top the balance back up."""
        user = await make_user()
        ledger = TrialCreditLedger(db)
        await ledger.enable_trial(user.id)
        reserved = await ledger.reserve(user.id)
        await ledger.settle(user.id, reserved, Decimal("0.10"))

        again = await ledger.enable_trial(user.id)

        assert again.already_enabled is True
        assert again.trial_credits == Decimal("0.40")

    @pytest.mark.asyncio
    async def test_missing_user(self, db: AsyncSession):
        """Enabling for an unknown user is a not-found error."""
        with pytest.raises(UserNotFoundError):
            await TrialCreditLedger(db).enable_trial(uuid4())


class TestReserveAndSettle:
    """Holds and reconciliation."""

    @pytest.mark.asyncio
    async def test_reserve_holds_configured_amount(self, db: AsyncSession, make_user):
        """A hold of TRIAL_HOLD_AMOUNT leaves the balance immediately."""
        user = await make_user(use_trial_mode=True, trial_credits="0.50")
        ledger = TrialCreditLedger(db)

        reserved = await ledger.reserve(user.id)

        assert reserved == settings.trial_hold_amount
        assert await ledger.balance(user.id) == Decimal("0.50") - settings.trial_hold_amount

    @pytest.mark.asyncio
    async def test_settle_refunds_unused_hold(self, db: AsyncSession, make_user):
        """Only the actual cost is debited."""
        user = await make_user(use_trial_mode=True, trial_credits="0.50")
        ledger = TrialCreditLedger(db)

        reserved = await ledger.reserve(user.id)
        remaining = await ledger.settle(user.id, reserved, Decimal("0.01"))

        assert remaining == Decimal("0.49")

    @pytest.mark.asyncio
    async def test_hold_is_capped_by_balance(self, db: AsyncSession, make_user):
        """With less than a full hold left, the whole balance is held."""
        user = await make_user(use_trial_mode=True, trial_credits="0.02")
        ledger = TrialCreditLedger(db)

        reserved = await ledger.reserve(user.id)

        assert reserved == Decimal("0.02")
        assert await ledger.balance(user.id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_settle_clamps_at_zero(self, db: AsyncSession, make_user):
        """A cost above the remaining balance drains it to zero, never below."""
        user = await make_user(use_trial_mode=True, trial_credits="0.03")
        ledger = TrialCreditLedger(db)

        reserved = await ledger.reserve(user.id)
        remaining = await ledger.settle(user.id, reserved, Decimal("0.20"))

        assert remaining == Decimal("0")

    @pytest.mark.asyncio
    async def test_settle_takes_excess_from_balance(self, db: AsyncSession, make_user):
        """A cost above the hold is taken from what is left."""
        user = await make_user(use_trial_mode=True, trial_credits="0.50")
        ledger = TrialCreditLedger(db)

        reserved = await ledger.reserve(user.id)
        remaining = await ledger.settle(user.id, reserved, reserved + Decimal("0.05"))

        assert remaining == Decimal("0.50") - reserved - Decimal("0.05")

    @pytest.mark.asyncio
    async def test_release_restores_balance(self, db: AsyncSession, make_user):
        """A failed call gives the whole hold back."""
        user = await make_user(use_trial_mode=True, trial_credits="0.50")
        ledger = TrialCreditLedger(db)

        reserved = await ledger.reserve(user.id)
        await ledger.release(user.id, reserved)

        assert await ledger.balance(user.id) == Decimal("0.50")

    @pytest.mark.asyncio
    async def test_exhausted_balance(self, db: AsyncSession, make_user):
        """A zero balance refuses entry."""
        user = await make_user(use_trial_mode=True, trial_credits="0")
        with pytest.raises(TrialCreditsExhaustedError):
            await TrialCreditLedger(db).reserve(user.id)

    @pytest.mark.asyncio
    async def test_trial_mode_off(self, db: AsyncSession, make_user):
        """Users not in trial mode cannot reserve, whatever their balance."""
        user = await make_user(use_trial_mode=False, trial_credits="0.50")
        with pytest.raises(TrialCreditsExhaustedError):
            await TrialCreditLedger(db).reserve(user.id)

    @pytest.mark.asyncio
    async def test_reserve_for_missing_user(self, db: AsyncSession):
        """Reserving for an unknown user is a not-found error."""
        with pytest.raises(UserNotFoundError):
            await TrialCreditLedger(db).reserve(uuid4())


class TestConcurrentDebits:
    """The balance cannot be overdrawn by parallel calls."""

    @pytest.mark.asyncio
    async def test_parallel_calls_never_overdraw(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_user,
        monkeypatch,
    ):
        """
        0.50 of credit and calls costing 0.06 each: eight full holds and one
        partial hold succeed, everything after that is refused.
        """
        monkeypatch.setattr(settings, "trial_hold_amount", Decimal("0.06"))
        user = await make_user(use_trial_mode=True, trial_credits="0.50")
        cost = Decimal("0.06")

        async def metered_call() -> bool:
            async with session_factory() as session:
                ledger = TrialCreditLedger(session)
                try:
                    reserved = await ledger.reserve(user.id)
                except TrialCreditsExhaustedError:
                    return False
                await asyncio.sleep(0)
                await ledger.settle(user.id, reserved, cost)
                return True

        outcomes = await asyncio.gather(*(metered_call() for _ in range(12)))

        async with session_factory() as session:
            final_balance = await TrialCreditLedger(session).balance(user.id)

        assert outcomes.count(True) == 9
        assert final_balance == Decimal("0")
