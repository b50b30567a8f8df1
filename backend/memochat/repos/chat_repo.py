from __future__ import annotations

import uuid
from typing import List

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.db.models import ChatTurnRow
from memochat.memory.types import ConversationTurn
from memochat.utils.time_utils import ensure_utc, utc_now


class ChatHistoryRepo:
    """Repository for chat turn persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def _next_seq(self, session_id: str) -> int:
        result = await self._db.execute(
            select(func.max(ChatTurnRow.seq)).where(ChatTurnRow.session_id == session_id)
        )
        max_seq = result.scalar_one() or 0
        return int(max_seq) + 1

    async def add_turn(
        self, session_id: str, text: str, *, is_user: bool, is_error: bool = False
    ) -> ChatTurnRow:
        """Append a turn with the next sequence number for the session."""

        for attempt in range(3):
            try:
                turn = ChatTurnRow(
                    id=uuid.uuid4().hex,
                    session_id=session_id,
                    seq=await self._next_seq(session_id),
                    text=text,
                    is_user=is_user,
                    is_error=is_error,
                    timestamp=utc_now(),
                )
                self._db.add(turn)
                await self._db.flush()
                return turn
            except IntegrityError:
                await self._db.rollback()
                if attempt == 2:
                    raise
        raise RuntimeError("Failed to insert chat turn after retries")

    async def recent_turns(self, session_id: str, limit: int) -> List[ConversationTurn]:
        """Return the most recent turns for a session in ascending order."""

        stmt = (
            select(ChatTurnRow)
            .where(ChatTurnRow.session_id == session_id)
            .order_by(ChatTurnRow.seq.desc())
            .limit(max(0, limit))
        )
        result = await self._db.execute(stmt)
        rows = list(result.scalars())
        rows.reverse()
        return [
            ConversationTurn(
                id=row.id,
                text=row.text,
                is_user=row.is_user,
                timestamp=ensure_utc(row.timestamp),
                is_error=row.is_error,
            )
            for row in rows
        ]


class ChatHistoryStore:
    """Session-managing facade over ChatHistoryRepo for services."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def add_turn(
        self, session_id: str, text: str, *, is_user: bool, is_error: bool = False
    ) -> None:
        async with self._sessionmaker() as db:
            async with db.begin():
                await ChatHistoryRepo(db).add_turn(
                    session_id, text, is_user=is_user, is_error=is_error
                )

    async def recent_turns(self, session_id: str, limit: int) -> List[ConversationTurn]:
        async with self._sessionmaker() as db:
            return await ChatHistoryRepo(db).recent_turns(session_id, limit)
