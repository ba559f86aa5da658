"""
User Model

Users are owned by the auth service; this table mirrors the identity and
the service tier the billing service assigns. The pipeline only reads it.

Tier drives three things:
- job priority (lower value is claimed first)
- the monthly budget ceiling checked before every paid call
- monthly upload and search allowances
- total storage held by non-deleted media
"""

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean
from sqlalchemy.orm import Mapped, mapped_column

from app.core.config import settings
from app.db.base import BaseModel, String100, String255


class ServiceTier(str, enum.Enum):
    """Subscription tier supplied by the billing service."""

    FREE = "free"
    PREMIUM = "premium"
    ULTIMATE = "ultimate"


@dataclass(frozen=True)
class TierLimits:
    priority: int
    budget_ceiling: Optional[Decimal]   # None = unlimited
    monthly_uploads: Optional[int]      # None = unlimited
    monthly_searches: Optional[int]     # None = unlimited
    storage_bytes: Optional[int]        # None = unlimited


def _limit(value: float) -> Optional[int]:
    return None if value < 0 else int(value)


def _ceiling(value: float) -> Optional[Decimal]:
    return None if value < 0 else Decimal(str(value))


def _megabytes(value: int) -> Optional[int]:
    return None if value < 0 else value * 1024 * 1024


def get_tier_limits(tier: ServiceTier) -> TierLimits:
    """Resolve the configured limits for a tier."""
    if tier == ServiceTier.ULTIMATE:
        return TierLimits(
            priority=settings.TIER_PRIORITY_ULTIMATE,
            budget_ceiling=_ceiling(settings.TIER_BUDGET_ULTIMATE_USD),
            monthly_uploads=_limit(settings.TIER_UPLOADS_ULTIMATE),
            monthly_searches=_limit(settings.TIER_SEARCHES_ULTIMATE),
            storage_bytes=_megabytes(settings.TIER_STORAGE_ULTIMATE_MB),
        )
    if tier == ServiceTier.PREMIUM:
        return TierLimits(
            priority=settings.TIER_PRIORITY_PREMIUM,
            budget_ceiling=_ceiling(settings.TIER_BUDGET_PREMIUM_USD),
            monthly_uploads=_limit(settings.TIER_UPLOADS_PREMIUM),
            monthly_searches=_limit(settings.TIER_SEARCHES_PREMIUM),
            storage_bytes=_megabytes(settings.TIER_STORAGE_PREMIUM_MB),
        )
    return TierLimits(
        priority=settings.TIER_PRIORITY_FREE,
        budget_ceiling=_ceiling(settings.TIER_BUDGET_FREE_USD),
        monthly_uploads=_limit(settings.TIER_UPLOADS_FREE),
        monthly_searches=_limit(settings.TIER_SEARCHES_FREE),
        storage_bytes=_megabytes(settings.TIER_STORAGE_FREE_MB),
    )


class User(BaseModel):
    """
    Application user.

    Table: users
    ------------
    - external_id: subject claim from the auth service token
    - tier: current service tier (written by billing, read here)
    """

    __tablename__ = "users"

    external_id: Mapped[str] = mapped_column(
        String255,
        unique=True,
        nullable=False,
        index=True,
        comment="Identity from the auth service (JWT sub claim)"
    )

    email: Mapped[str] = mapped_column(
        String255,
        unique=True,
        nullable=False,
        comment="User's email address"
    )

    name: Mapped[Optional[str]] = mapped_column(
        String100,
        nullable=True,
        comment="Display name"
    )

    tier: Mapped[ServiceTier] = mapped_column(
        nullable=False,
        default=ServiceTier.FREE,
        comment="Service tier: free, premium, ultimate"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Disabled accounts cannot enqueue or search"
    )

    @property
    def limits(self) -> TierLimits:
        return get_tier_limits(self.tier)

    def __repr__(self) -> str:
        return f"User(id={self.id}, email={self.email!r}, tier={self.tier.value})"
