from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.db.models import RewardTransaction
from memochat.repos.reward_repo import RewardRepo
from memochat.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

KIND_INFERENCE = "inference"
KIND_FIRST_CHAT = "first_chat"
KIND_RESONANCE_BONUS = "resonance_bonus"

# (threshold, grade, total bonus for the grade)
_RESONANCE_GRADES = ((90, "S", 100), (70, "A", 30), (40, "B", 10), (0, "C", 0))


class RewardCollaborator(Protocol):
    async def reward_inference(self) -> int:
        """Issue the fixed per-turn reward and return the amount."""

    async def reward_resonance_bonus(self, score: int) -> int:
        """Issue the bonus for a resonance score; 0 when not applicable."""

    async def reward_first_chat_of_day(self) -> int:
        """Issue the daily first-chat reward once per UTC day."""


def resonance_grade(score: int) -> str:
    for threshold, grade, _ in _RESONANCE_GRADES:
        if score >= threshold:
            return grade
    return "C"


def resonance_bonus(score: int) -> int:
    """Extra amount for a score on top of the B-grade share already in the base reward."""

    base_share = _RESONANCE_GRADES[2][2]
    for threshold, grade, total in _RESONANCE_GRADES:
        if score >= threshold:
            return total - base_share if grade in {"S", "A"} else 0
    return 0


class LedgerRewardService:
    """Reward issuance backed by the local transaction ledger."""

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        user_id: str,
        inference_amount: int = 10,
        first_chat_amount: int = 30,
        daily_full_reward_limit: int = 50,
        over_limit_amount: int = 1,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._user_id = user_id
        self._inference_amount = inference_amount
        self._first_chat_amount = first_chat_amount
        self._daily_full_reward_limit = daily_full_reward_limit
        self._over_limit_amount = over_limit_amount

    async def reward_inference(self) -> int:
        async with self._sessionmaker() as db:
            async with db.begin():
                repo = RewardRepo(db)
                issued_today = await repo.count_since(
                    self._user_id, KIND_INFERENCE, _start_of_utc_day()
                )
                amount = (
                    self._inference_amount
                    if issued_today < self._daily_full_reward_limit
                    else self._over_limit_amount
                )
                await repo.add_transaction(
                    self._user_id, KIND_INFERENCE, amount, "Chat inference reward"
                )
        logger.debug("Inference reward issued: %s", amount)
        return amount

    async def reward_first_chat_of_day(self) -> int:
        async with self._sessionmaker() as db:
            async with db.begin():
                repo = RewardRepo(db)
                if await repo.count_since(self._user_id, KIND_FIRST_CHAT, _start_of_utc_day()):
                    return 0
                await repo.add_transaction(
                    self._user_id, KIND_FIRST_CHAT, self._first_chat_amount, "Daily first chat"
                )
        logger.info("First chat of the day rewarded: %s", self._first_chat_amount)
        return self._first_chat_amount

    async def reward_resonance_bonus(self, score: int) -> int:
        amount = resonance_bonus(score)
        if amount <= 0:
            return 0
        grade = resonance_grade(score)
        async with self._sessionmaker() as db:
            async with db.begin():
                await RewardRepo(db).add_transaction(
                    self._user_id,
                    KIND_RESONANCE_BONUS,
                    amount,
                    f"{grade}-grade persona resonance (score={score})",
                )
        logger.info("Resonance bonus issued: %s (grade=%s)", amount, grade)
        return amount

    async def balance(self) -> int:
        async with self._sessionmaker() as db:
            return await RewardRepo(db).balance(self._user_id)

    async def recent_transactions(self, limit: int) -> list[RewardTransaction]:
        async with self._sessionmaker() as db:
            return await RewardRepo(db).list_transactions(self._user_id, limit)


def _start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    current = now or utc_now()
    return current.replace(hour=0, minute=0, second=0, microsecond=0)
