"""
Cost & Budget Ledger

Records the monetary cost of every external call and decides whether a user
may spend more in the current billing period.

Budget checks must hold under concurrency: two jobs for the same user must
not both pass a check that only one of them fits under. The ledger uses
reserve-then-settle on the user's BudgetPeriod row:

1. reserve(estimate)  - one conditional UPDATE:
                        reserved += estimate
                        WHERE spent < ceiling AND spent + reserved + estimate <= ceiling
                        zero rows updated → BudgetExceededError
2. record_cost(...)   - append CostRecord, spent += amount (same transaction)
3. release(...)       - reserved -= estimate once the call is over

The database serializes concurrent UPDATEs on the row, so the compare and
the increment happen atomically.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import BudgetExceededError
from app.core.logging import get_logger
from app.models.billing import BudgetPeriod, CostRecord

logger = get_logger(__name__)

ZERO = Decimal("0")


def current_period_key(now: Optional[datetime] = None) -> str:
    """Billing period for a timestamp, as YYYY-MM (UTC)."""
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m")


def to_money(value) -> Decimal:
    """Coerce floats/ints/None from drivers into a 6-place Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal("0.000001"))


@dataclass
class BudgetReservation:
    """Budget held for one in-flight paid call."""

    user_id: int
    period_key: str
    amount: Decimal
    released: bool = False


class CostLedger:
    """
    Append-only cost records plus per-period budget accounting.

    Each operation opens its own short transaction through `session_factory`,
    so callers never hold a database transaction across an external call.

    Usage:
    ------
    ledger = CostLedger(AsyncSessionLocal)

    reservation = await ledger.reserve(user_id, ceiling=Decimal("1.00"), estimate=Decimal("0.002"))
    try:
        ...  # paid call
        await ledger.record_cost(user_id=user_id, service="rekognition",
                                 operation="detect_labels", amount=Decimal("0.001"))
    finally:
        await ledger.release(reservation)
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    # ========================================
    # Budget Period Rows
    # ========================================

    async def _ensure_period(self, user_id: int, period_key: str) -> None:
        """Create the user's BudgetPeriod row for the period if it is missing."""
        async with self.session_factory() as session:
            existing = await session.scalar(
                select(BudgetPeriod.id).where(
                    BudgetPeriod.user_id == user_id,
                    BudgetPeriod.period_key == period_key,
                )
            )
            if existing is not None:
                return

            spent = await self._sum_cost_records(session, user_id, period_key)
            session.add(BudgetPeriod(
                user_id=user_id,
                period_key=period_key,
                spent=spent,
                reserved=ZERO,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Another worker created it first; theirs is equivalent.
                await session.rollback()
                logger.debug("budget_period_created_concurrently", user_id=user_id, period_key=period_key)

    @staticmethod
    async def _sum_cost_records(session: AsyncSession, user_id: int, period_key: str) -> Decimal:
        total = await session.scalar(
            select(func.coalesce(func.sum(CostRecord.amount), 0)).where(
                CostRecord.user_id == user_id,
                CostRecord.period_key == period_key,
            )
        )
        return to_money(total)

    # ========================================
    # Budget Gate
    # ========================================

    async def reserve(
        self,
        user_id: int,
        ceiling: Optional[Decimal],
        estimate: Decimal,
    ) -> BudgetReservation:
        """
        Atomically hold `estimate` against the user's period budget.

        Args:
            user_id: Owner being charged
            ceiling: Period budget ceiling; None means unlimited
            estimate: Upper bound of what the call may cost

        Returns:
            BudgetReservation to pass to release()

        Raises:
            BudgetExceededError: spend is at/above the ceiling, or the estimate
                would push spend + outstanding reservations over it
        """
        estimate = to_money(max(estimate, ZERO))
        period_key = current_period_key()
        await self._ensure_period(user_id, period_key)

        stmt = (
            update(BudgetPeriod)
            .where(
                BudgetPeriod.user_id == user_id,
                BudgetPeriod.period_key == period_key,
            )
            .values(reserved=BudgetPeriod.reserved + estimate)
            .execution_options(synchronize_session=False)
        )
        if ceiling is not None:
            stmt = stmt.where(
                BudgetPeriod.spent < ceiling,
                BudgetPeriod.spent + BudgetPeriod.reserved + estimate <= ceiling,
            )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "budget_reservation_refused",
                user_id=user_id,
                period_key=period_key,
                estimate=str(estimate),
                ceiling=str(ceiling),
            )
            raise BudgetExceededError(
                f"Period budget of {ceiling} USD reached for user {user_id}"
            )

        logger.debug("budget_reserved", user_id=user_id, estimate=str(estimate))
        return BudgetReservation(user_id=user_id, period_key=period_key, amount=estimate)

    async def release(self, reservation: Optional[BudgetReservation]) -> None:
        """Return a reservation's hold. Releasing twice is a no-op."""
        if reservation is None or reservation.released:
            return

        async with self.session_factory() as session:
            await session.execute(
                update(BudgetPeriod)
                .where(
                    BudgetPeriod.user_id == reservation.user_id,
                    BudgetPeriod.period_key == reservation.period_key,
                )
                .values(reserved=BudgetPeriod.reserved - reservation.amount)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        reservation.released = True

    async def check_budget(self, user_id: int, ceiling: Optional[Decimal]) -> bool:
        """Read-only check: True while recorded period spend is below the ceiling."""
        if ceiling is None:
            return True
        spent = await self.get_period_spend(user_id)
        return spent < ceiling

    # ========================================
    # Cost Records
    # ========================================

    async def record_cost(
        self,
        *,
        user_id: int,
        service: str,
        operation: str,
        amount: Decimal,
        succeeded: bool = True,
        job_id: Optional[int] = None,
        media_item_id: Optional[int] = None,
        currency: str = "USD",
    ) -> Optional[CostRecord]:
        """
        Append a CostRecord and add it to the period's running spend.

        Zero-amount calls are not recorded. Returns the record, or None when
        cost tracking is disabled or the amount is zero.
        """
        amount = to_money(amount)
        if not settings.ENABLE_COST_TRACKING or amount <= ZERO:
            return None

        period_key = current_period_key()
        await self._ensure_period(user_id, period_key)

        record = CostRecord(
            user_id=user_id,
            service=service,
            operation=operation,
            amount=amount,
            currency=currency,
            period_key=period_key,
            succeeded=succeeded,
            job_id=job_id,
            media_item_id=media_item_id,
        )

        async with self.session_factory() as session:
            session.add(record)
            await session.execute(
                update(BudgetPeriod)
                .where(
                    BudgetPeriod.user_id == user_id,
                    BudgetPeriod.period_key == period_key,
                )
                .values(spent=BudgetPeriod.spent + amount)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(
            "cost_recorded",
            user_id=user_id,
            service=service,
            operation=operation,
            amount=str(amount),
            succeeded=succeeded,
            job_id=job_id,
        )
        return record

    # ========================================
    # Statistics
    # ========================================

    async def get_period_spend(self, user_id: int, period_key: Optional[str] = None) -> Decimal:
        """Sum of the user's cost records for a period (default: current)."""
        async with self.session_factory() as session:
            return await self._sum_cost_records(session, user_id, period_key or current_period_key())

    async def get_usage_breakdown(self, user_id: int, period_key: Optional[str] = None) -> Dict[str, Decimal]:
        """Period spend grouped by service."""
        period_key = period_key or current_period_key()
        async with self.session_factory() as session:
            rows = await session.execute(
                select(CostRecord.service, func.sum(CostRecord.amount))
                .where(
                    CostRecord.user_id == user_id,
                    CostRecord.period_key == period_key,
                )
                .group_by(CostRecord.service)
                .order_by(CostRecord.service)
            )
            return {service: to_money(total) for service, total in rows.all()}


# ========================================
# Dependency Injection
# ========================================

def get_cost_ledger() -> CostLedger:
    """Ledger bound to the application's session factory."""
    from app.db.session import AsyncSessionLocal
    return CostLedger(AsyncSessionLocal)
