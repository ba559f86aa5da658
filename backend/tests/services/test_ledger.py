"""
Tests for CostLedger.

This test module verifies:
1. Cost records and running period spend
2. The budget gate (at/over ceiling, outstanding reservations)
3. Reservation release
4. Concurrent reservations cannot both pass a gate only one fits under
5. Usage breakdown per service
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.core.errors import BudgetExceededError
from app.models.billing import BudgetPeriod, CostRecord
from app.services.ledger import current_period_key, to_money


async def _period(session_factory, user_id):
    async with session_factory() as session:
        return await session.scalar(
            select(BudgetPeriod).where(
                BudgetPeriod.user_id == user_id,
                BudgetPeriod.period_key == current_period_key(),
            )
        )


class TestHelpers:
    """Pure helpers."""

    def test_period_key_is_year_month(self):
        """Billing periods are calendar months in UTC."""
        assert current_period_key(datetime(2024, 3, 31, 23, 59, tzinfo=timezone.utc)) == "2024-03"

    def test_to_money_quantizes(self):
        """Driver floats become 6-place Decimals."""
        assert to_money(0.5) == Decimal("0.500000")
        assert to_money(None) == Decimal("0")


@pytest.mark.asyncio
class TestCostRecording:
    """Test record_cost and spend queries."""

    async def test_record_cost_updates_spend(self, ledger, session_factory, test_user):
        """A record adds to the period spend."""
        record = await ledger.record_cost(
            user_id=test_user.id,
            service="rekognition",
            operation="detect_labels",
            amount=Decimal("0.25"),
        )

        assert record is not None
        assert record.period_key == current_period_key()
        assert await ledger.get_period_spend(test_user.id) == Decimal("0.25")

        period = await _period(session_factory, test_user.id)
        assert period.spent == Decimal("0.25")

    async def test_zero_amount_not_recorded(self, ledger, session_factory, test_user):
        """Free calls leave no cost record."""
        assert await ledger.record_cost(
            user_id=test_user.id, service="local", operation="embeddings", amount=Decimal("0")
        ) is None

        async with session_factory() as session:
            count = await session.scalar(select(func.count(CostRecord.id)))
        assert count == 0

    async def test_tracking_disabled(self, ledger, test_user, monkeypatch):
        """With cost tracking off nothing is written."""
        monkeypatch.setattr(settings, "ENABLE_COST_TRACKING", False)

        assert await ledger.record_cost(
            user_id=test_user.id, service="openai", operation="embeddings", amount=Decimal("0.5")
        ) is None
        assert await ledger.get_period_spend(test_user.id) == Decimal("0")

    async def test_failed_attempts_are_recorded(self, ledger, session_factory, test_user):
        """Charged failures are kept apart from successes."""
        await ledger.record_cost(
            user_id=test_user.id, service="transcribe", operation="transcribe",
            amount=Decimal("0.5"), succeeded=False,
        )

        async with session_factory() as session:
            record = await session.scalar(select(CostRecord))
        assert record.succeeded is False
        assert record.currency == "USD"

    async def test_usage_breakdown(self, ledger, test_user):
        """Spend grouped by service."""
        await ledger.record_cost(user_id=test_user.id, service="openai", operation="embeddings", amount=Decimal("0.25"))
        await ledger.record_cost(user_id=test_user.id, service="openai", operation="embeddings", amount=Decimal("0.25"))
        await ledger.record_cost(user_id=test_user.id, service="rekognition", operation="detect_text", amount=Decimal("0.125"))

        breakdown = await ledger.get_usage_breakdown(test_user.id)

        assert breakdown == {"openai": Decimal("0.5"), "rekognition": Decimal("0.125")}


@pytest.mark.asyncio
class TestBudgetGate:
    """Test reserve / release."""

    async def test_reserve_under_ceiling(self, ledger, session_factory, test_user):
        """A reservation that fits is held on the period row."""
        reservation = await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.5"))

        period = await _period(session_factory, test_user.id)
        assert period.reserved == Decimal("0.5")

        await ledger.release(reservation)
        period = await _period(session_factory, test_user.id)
        assert period.reserved == Decimal("0")

    async def test_release_twice_is_noop(self, ledger, session_factory, test_user):
        """Releasing the same reservation twice does not go negative."""
        reservation = await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.5"))
        await ledger.release(reservation)
        await ledger.release(reservation)
        await ledger.release(None)

        period = await _period(session_factory, test_user.id)
        assert period.reserved == Decimal("0")

    async def test_refused_at_ceiling(self, ledger, test_user):
        """Spend equal to the ceiling refuses even a tiny estimate."""
        await ledger.record_cost(user_id=test_user.id, service="x", operation="y", amount=Decimal("1.0"))

        with pytest.raises(BudgetExceededError) as exc_info:
            await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.000001"))

        assert exc_info.value.reason == "budget_exceeded"
        assert await ledger.check_budget(test_user.id, Decimal("1.0")) is False

    async def test_refused_when_estimate_overshoots(self, ledger, test_user):
        """Spend + estimate above the ceiling is refused."""
        await ledger.record_cost(user_id=test_user.id, service="x", operation="y", amount=Decimal("0.5"))

        with pytest.raises(BudgetExceededError):
            await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.75"))

        assert await ledger.check_budget(test_user.id, Decimal("1.0")) is True

    async def test_outstanding_reservations_count(self, ledger, test_user):
        """Held reservations use up headroom until released."""
        first = await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.5"))
        await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.5"))

        with pytest.raises(BudgetExceededError):
            await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.25"))

        await ledger.release(first)
        assert await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.25"))

    async def test_unlimited_ceiling(self, ledger, test_user):
        """No ceiling means no refusal."""
        await ledger.record_cost(user_id=test_user.id, service="x", operation="y", amount=Decimal("1000"))

        reservation = await ledger.reserve(test_user.id, None, Decimal("50"))

        assert reservation.amount == Decimal("50")
        assert await ledger.check_budget(test_user.id, None) is True

    async def test_concurrent_reservations(self, ledger, test_user):
        """Two reservations racing for room only one fits into: one wins."""
        # Create the period row up front so both callers hit the same UPDATE
        await ledger.release(await ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0")))

        results = await asyncio.gather(
            ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.75")),
            ledger.reserve(test_user.id, Decimal("1.0"), Decimal("0.75")),
            return_exceptions=True,
        )

        refused = [r for r in results if isinstance(r, BudgetExceededError)]
        held = [r for r in results if not isinstance(r, Exception)]
        assert len(refused) == 1
        assert len(held) == 1
