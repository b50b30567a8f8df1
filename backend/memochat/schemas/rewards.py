from __future__ import annotations

from datetime import datetime

from memochat.schemas.common import APIModel


class RewardTransactionOut(APIModel):
    id: str
    kind: str
    amount: int
    description: str
    created_at: datetime


class RewardSummaryOut(APIModel):
    """Ledger balance with the newest transactions first."""

    balance: int
    transactions: list[RewardTransactionOut]
