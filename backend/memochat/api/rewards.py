from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from memochat.schemas.rewards import RewardSummaryOut, RewardTransactionOut
from memochat.services.reward_service import LedgerRewardService

router = APIRouter(prefix="/api/rewards", tags=["rewards"])


def get_reward_service(request: Request) -> LedgerRewardService:
    """Dependency to access the reward ledger from app state."""

    return request.app.state.rewards


@router.get("", response_model=RewardSummaryOut)
async def reward_summary(
    limit: int = Query(default=20, ge=1, le=200),
    rewards: LedgerRewardService = Depends(get_reward_service),
) -> RewardSummaryOut:
    transactions = await rewards.recent_transactions(limit)
    return RewardSummaryOut(
        balance=await rewards.balance(),
        transactions=[RewardTransactionOut.model_validate(item) for item in transactions],
    )
