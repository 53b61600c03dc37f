from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from humsafer.controllers.ai import resolve_tier
from humsafer.dependencies import get_orchestrator, get_usage_store, rate_limit
from humsafer.services.orchestrator import Orchestrator
from humsafer.services.usage_store import UsageStore

router = APIRouter(prefix="/usage", tags=["usage"])


class QuotaResponse(BaseModel):
    tier: str
    remaining_total: int
    remaining_today: int
    unlimited: bool
    total_limit: int
    daily_limit: int


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    tier_level: str | None = Query(None),
    user_id: str = Depends(rate_limit),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    store: UsageStore = Depends(get_usage_store),
):
    tier = await resolve_tier(store, user_id, tier_level)
    snapshot = await orchestrator.get_quota_snapshot(user_id, tier)
    return QuotaResponse(
        tier=tier,
        remaining_total=snapshot.remaining_total,
        remaining_today=snapshot.remaining_today,
        unlimited=snapshot.unlimited,
        total_limit=snapshot.total_limit,
        daily_limit=snapshot.daily_limit,
    )
