from __future__ import annotations

import json
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.memory.search import SemanticSearchEngine
from memochat.memory.types import MemoryRecord
from memochat.repos.memory_repo import MemoryRepo
from memochat.utils.crypto import MemoryCipher
from memochat.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)


class MemoryStore:
    """Ingest path for user memories.

    Plaintext is embedded and sealed here, then dropped. Only the
    ciphertext blob, the record and its vector reach the database.
    """

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        cipher: MemoryCipher,
        search_engine: SemanticSearchEngine,
        user_id: str,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._cipher = cipher
        self._search_engine = search_engine
        self._user_id = user_id

    async def add_memory(
        self, plaintext: str, metadata: Optional[dict[str, str]] = None
    ) -> MemoryRecord:
        content = plaintext.strip()
        if not content:
            raise ValueError("Memory content must not be empty.")

        memory_id = uuid.uuid4().hex
        storage_pointer = f"blob:{uuid.uuid4().hex}"
        clean_metadata = {str(key): str(value) for key, value in (metadata or {}).items()}

        async with self._sessionmaker() as db:
            async with db.begin():
                row = await MemoryRepo(db).add_record(
                    memory_id=memory_id,
                    user_id=self._user_id,
                    storage_pointer=storage_pointer,
                    metadata_json=json.dumps(clean_metadata, ensure_ascii=False),
                    ciphertext=self._cipher.seal(content),
                )
                indexed = await self._search_engine.index_memory(
                    memory_id=memory_id, text=content, db=db
                )

        if not indexed:
            logger.warning("Memory %s stored without a vector; it will not be searchable", memory_id)
        return MemoryRecord(
            id=row.id,
            storage_pointer=row.storage_pointer,
            created_at=ensure_utc(row.created_at),
            metadata=clean_metadata,
        )
