from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from memochat.db.models import RewardTransaction
from memochat.utils.time_utils import utc_now


class RewardRepo:
    """Repository for the reward transaction ledger."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def add_transaction(
        self, user_id: str, kind: str, amount: int, description: str = ""
    ) -> RewardTransaction:
        transaction = RewardTransaction(
            id=uuid.uuid4().hex,
            user_id=user_id,
            kind=kind,
            amount=amount,
            description=description,
            created_at=utc_now(),
        )
        self._db.add(transaction)
        await self._db.flush()
        return transaction

    async def count_since(self, user_id: str, kind: str, since: datetime) -> int:
        result = await self._db.execute(
            select(func.count(RewardTransaction.id)).where(
                RewardTransaction.user_id == user_id,
                RewardTransaction.kind == kind,
                RewardTransaction.created_at >= since,
            )
        )
        return int(result.scalar_one() or 0)

    async def balance(self, user_id: str) -> int:
        result = await self._db.execute(
            select(func.coalesce(func.sum(RewardTransaction.amount), 0)).where(
                RewardTransaction.user_id == user_id
            )
        )
        return int(result.scalar_one() or 0)

    async def list_transactions(
        self, user_id: str, limit: int, kind: Optional[str] = None
    ) -> List[RewardTransaction]:
        """Return the newest transactions first."""

        stmt = select(RewardTransaction).where(RewardTransaction.user_id == user_id)
        if kind:
            stmt = stmt.where(RewardTransaction.kind == kind)
        stmt = stmt.order_by(RewardTransaction.created_at.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars())
