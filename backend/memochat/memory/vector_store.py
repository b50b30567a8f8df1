from __future__ import annotations

import json
import math
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from memochat.memory.types import SearchHit
from memochat.repos.memory_repo import MemoryRepo


class VectorStore(ABC):
    """Abstract storage backend for memory vectors."""

    @abstractmethod
    async def upsert_vector(
        self,
        *,
        db: AsyncSession,
        memory_id: str,
        embedding: Sequence[float],
        embed_provider: str,
        embed_model: str,
    ) -> None:
        """Insert or update the vector for one memory."""

    @abstractmethod
    async def search(
        self,
        *,
        db: AsyncSession,
        user_id: str,
        query_embedding: Sequence[float],
        limit: int,
        threshold: float,
    ) -> list[SearchHit]:
        """Return up to ``limit`` hits scoring at least ``threshold``."""

    @abstractmethod
    async def count(self, *, db: AsyncSession, user_id: str) -> int:
        """Count memories stored for a user."""


class SQLiteVectorStore(VectorStore):
    """SQLite-backed vector store with in-process cosine similarity."""

    _MAX_CANDIDATES = 2000

    async def upsert_vector(
        self,
        *,
        db: AsyncSession,
        memory_id: str,
        embedding: Sequence[float],
        embed_provider: str,
        embed_model: str,
    ) -> None:
        vector = [float(value) for value in embedding]
        norm = math.sqrt(sum(value * value for value in vector))
        await MemoryRepo(db).upsert_embedding(
            embedding_id=uuid.uuid4().hex,
            memory_id=memory_id,
            provider=embed_provider,
            model_name=embed_model,
            dim=len(vector),
            vector_json=json.dumps(vector, separators=(",", ":")),
            vector_norm=norm if norm > 0 else 1.0,
        )

    async def search(
        self,
        *,
        db: AsyncSession,
        user_id: str,
        query_embedding: Sequence[float],
        limit: int,
        threshold: float,
    ) -> list[SearchHit]:
        if limit <= 0:
            return []

        query = [float(value) for value in query_embedding]
        query_norm = math.sqrt(sum(value * value for value in query))
        if query_norm <= 0:
            return []

        rows = await MemoryRepo(db).list_vectors(user_id=user_id, limit=self._MAX_CANDIDATES)
        hits: list[SearchHit] = []
        for record, embedding in rows:
            try:
                candidate = [float(value) for value in json.loads(embedding.vector_json)]
            except (json.JSONDecodeError, TypeError, ValueError):
                continue
            if len(candidate) != len(query):
                continue
            score = _cosine_similarity(query, query_norm, candidate, float(embedding.vector_norm))
            if score >= threshold:
                hits.append(SearchHit(memory_id=record.id, score=score))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    async def count(self, *, db: AsyncSession, user_id: str) -> int:
        return await MemoryRepo(db).count_records(user_id)


def _cosine_similarity(
    left: list[float], left_norm: float, right: list[float], right_norm: float
) -> float:
    if left_norm <= 0 or right_norm <= 0:
        return 0.0
    dot = sum(l_value * r_value for l_value, r_value in zip(left, right))
    return dot / (left_norm * right_norm)
