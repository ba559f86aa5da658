"""
Cost Accounting Models

Models Included:
----------------
1. CostRecord - Append-only record of one charged external call
2. BudgetPeriod - Per-user, per-month running totals used for the budget gate

CostRecord rows are never updated or deleted, including when the media
item that caused them is deleted; they are the billing history.

BudgetPeriod is the concurrency primitive for budget checks: a reservation
is a single conditional UPDATE that only succeeds when
spent + reserved + estimate stays within the ceiling.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseModel, String100

Money = Numeric(14, 6)


class CostRecord(BaseModel):
    """One external call the provider charged for."""

    __tablename__ = "cost_records"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    service: Mapped[str] = mapped_column(
        String100,
        nullable=False,
        comment="Provider service, e.g. rekognition, openai"
    )

    operation: Mapped[str] = mapped_column(
        String100,
        nullable=False,
        comment="Provider operation, e.g. detect_labels, embeddings"
    )

    amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )

    period_key: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        index=True,
        comment="Billing period, YYYY-MM"
    )

    succeeded: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="False when charged for an attempt that failed"
    )

    job_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("processing_jobs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    media_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("media_items.id", ondelete="SET NULL"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"CostRecord(id={self.id}, user_id={self.user_id}, "
            f"{self.service}.{self.operation}={self.amount} {self.currency})"
        )


class BudgetPeriod(BaseModel):
    """Running spend and outstanding reservations for one user and month."""

    __tablename__ = "budget_periods"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    period_key: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
    )

    spent: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0"),
    )

    reserved: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0"),
    )

    __table_args__ = (
        UniqueConstraint("user_id", "period_key", name="uq_budget_user_period"),
    )
