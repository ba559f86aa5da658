"""
Pydantic schemas for the usage endpoint.
"""

from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field

from app.models.user import ServiceTier


class UsageResponse(BaseModel):
    """Spend and allowances for the current billing period."""

    period: str = Field(..., examples=["2024-05"])
    tier: ServiceTier
    currency: str = "USD"
    spent: Decimal
    ceiling: Optional[Decimal] = Field(None, description="None means unlimited")
    remaining: Optional[Decimal] = None
    by_service: Dict[str, Decimal] = Field(default_factory=dict)
    uploads_used: int
    uploads_limit: Optional[int] = None
    searches_used: int
    searches_limit: Optional[int] = None
    storage_used_bytes: int = 0
    storage_limit_bytes: Optional[int] = Field(None, description="None means unlimited")
