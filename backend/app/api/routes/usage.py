"""
Usage API endpoint: spend and allowances for the current billing period.
"""

from fastapi import APIRouter, Depends

from app.core.auth import get_current_active_user
from app.models.user import User
from app.schemas.usage import UsageResponse
from app.services.ledger import CostLedger, current_period_key, get_cost_ledger
from app.services.media import MediaService, get_media_service
from app.services.search import SearchService, get_search_service

router = APIRouter(prefix="/usage", tags=["Usage"])


@router.get(
    "",
    response_model=UsageResponse,
    summary="Current period usage",
)
async def get_usage(
    current_user: User = Depends(get_current_active_user),
    ledger: CostLedger = Depends(get_cost_ledger),
    media_service: MediaService = Depends(get_media_service),
    search_service: SearchService = Depends(get_search_service),
):
    limits = current_user.limits
    spent = await ledger.get_period_spend(current_user.id)
    remaining = None
    if limits.budget_ceiling is not None:
        remaining = max(limits.budget_ceiling - spent, 0)

    return UsageResponse(
        period=current_period_key(),
        tier=current_user.tier,
        spent=spent,
        ceiling=limits.budget_ceiling,
        remaining=remaining,
        by_service=await ledger.get_usage_breakdown(current_user.id),
        uploads_used=await media_service.uploads_this_period(current_user.id),
        uploads_limit=limits.monthly_uploads,
        searches_used=await search_service.searches_this_period(current_user.id),
        searches_limit=limits.monthly_searches,
        storage_used_bytes=await media_service.storage_used(current_user.id),
        storage_limit_bytes=limits.storage_bytes,
    )
