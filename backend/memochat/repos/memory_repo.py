from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from memochat.db.models import MemoryBlob, MemoryEmbedding, MemoryRecordRow
from memochat.utils.time_utils import utc_now


class MemoryRepo:
    """Repository for encrypted memory records, blobs and their vectors."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def add_record(
        self,
        *,
        memory_id: str,
        user_id: str,
        storage_pointer: str,
        metadata_json: str,
        ciphertext: str,
    ) -> MemoryRecordRow:
        """Insert a memory record together with its ciphertext blob."""

        now = utc_now()
        self._db.add(MemoryBlob(storage_pointer=storage_pointer, ciphertext=ciphertext, created_at=now))
        record = MemoryRecordRow(
            id=memory_id,
            user_id=user_id,
            storage_pointer=storage_pointer,
            metadata_json=metadata_json,
            created_at=now,
        )
        self._db.add(record)
        await self._db.flush()
        return record

    async def upsert_embedding(
        self,
        *,
        embedding_id: str,
        memory_id: str,
        provider: str,
        model_name: str,
        dim: int,
        vector_json: str,
        vector_norm: float,
    ) -> MemoryEmbedding:
        """Insert or update the vector payload for a memory record."""

        existing = await self._get_embedding(memory_id)
        if existing:
            existing.provider = provider
            existing.model_name = model_name
            existing.dim = dim
            existing.vector_json = vector_json
            existing.vector_norm = vector_norm
            await self._db.flush()
            return existing

        embedding = MemoryEmbedding(
            id=embedding_id,
            memory_id=memory_id,
            provider=provider,
            model_name=model_name,
            dim=dim,
            vector_json=vector_json,
            vector_norm=vector_norm,
            created_at=utc_now(),
        )
        self._db.add(embedding)
        await self._db.flush()
        return embedding

    async def count_records(self, user_id: str) -> int:
        result = await self._db.execute(
            select(func.count(MemoryRecordRow.id)).where(MemoryRecordRow.user_id == user_id)
        )
        return int(result.scalar_one() or 0)

    async def list_vectors(
        self, *, user_id: str, limit: int
    ) -> list[tuple[MemoryRecordRow, MemoryEmbedding]]:
        """List record + embedding pairs, newest first."""

        stmt = (
            select(MemoryRecordRow, MemoryEmbedding)
            .join(MemoryEmbedding, MemoryEmbedding.memory_id == MemoryRecordRow.id)
            .where(MemoryRecordRow.user_id == user_id)
            .order_by(MemoryRecordRow.created_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.tuples())

    async def get_records(self, memory_ids: Sequence[str]) -> list[MemoryRecordRow]:
        if not memory_ids:
            return []
        result = await self._db.execute(
            select(MemoryRecordRow).where(MemoryRecordRow.id.in_(list(memory_ids)))
        )
        return list(result.scalars())

    async def get_ciphertexts(self, storage_pointers: Sequence[str]) -> dict[str, str]:
        """Map storage pointer to ciphertext for the pointers that exist."""

        if not storage_pointers:
            return {}
        result = await self._db.execute(
            select(MemoryBlob).where(MemoryBlob.storage_pointer.in_(list(storage_pointers)))
        )
        return {blob.storage_pointer: blob.ciphertext for blob in result.scalars()}

    async def _get_embedding(self, memory_id: str) -> Optional[MemoryEmbedding]:
        result = await self._db.execute(
            select(MemoryEmbedding).where(MemoryEmbedding.memory_id == memory_id)
        )
        return result.scalar_one_or_none()
