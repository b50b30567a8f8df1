from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.memory.embedder import Embedder, EmbeddingError
from memochat.memory.types import SearchEmpty, SearchError, SearchOutcome, SearchSuccess
from memochat.memory.vector_store import VectorStore

logger = logging.getLogger(__name__)


class SearchCollaborator(Protocol):
    """Ranked memory-id lookup. Never raises; failures come back tagged."""

    async def search(self, query: str, top_k: int, threshold: float) -> SearchOutcome:
        """Return hits for the query, or an Empty/Error outcome."""

    async def count_memories(self) -> int:
        """Return how many memories the user has stored."""


class SemanticSearchEngine:
    """Embedding + vector-store search over one user's encrypted memories."""

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        embedder: Embedder,
        vector_store: VectorStore,
        user_id: str,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._embedder = embedder
        self._vector_store = vector_store
        self._user_id = user_id

    async def search(self, query: str, top_k: int, threshold: float) -> SearchOutcome:
        cleaned = query.strip()
        if not cleaned:
            return SearchEmpty("empty query")

        try:
            query_embedding = (await self._embedder.embed_texts([cleaned]))[0]
        except (EmbeddingError, IndexError) as exc:
            logger.warning("Memory search skipped because query embedding failed: %s", exc)
            return SearchError(f"embedding failed: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("Memory search failed while embedding query")
            return SearchError(str(exc) or type(exc).__name__)

        try:
            async with self._db_context(None) as db:
                hits = await self._vector_store.search(
                    db=db,
                    user_id=self._user_id,
                    query_embedding=query_embedding,
                    limit=max(1, top_k),
                    threshold=threshold,
                )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Memory search failed while reading vector store")
            return SearchError(str(exc) or type(exc).__name__)

        if not hits:
            return SearchEmpty(f"no memory scored above {threshold}")
        logger.debug("Memory search returned %s hits", len(hits))
        return SearchSuccess(hits)

    async def count_memories(self) -> int:
        async with self._db_context(None) as db:
            return await self._vector_store.count(db=db, user_id=self._user_id)

    async def index_memory(
        self, *, memory_id: str, text: str, db: Optional[AsyncSession] = None
    ) -> bool:
        """Embed plaintext at creation time and store only the vector."""

        try:
            embedding = (await self._embedder.embed_texts([text]))[0]
        except (EmbeddingError, IndexError) as exc:
            logger.warning("Memory %s not indexed because embedding failed: %s", memory_id, exc)
            return False

        async with self._db_context(db) as active_db:
            await self._vector_store.upsert_vector(
                db=active_db,
                memory_id=memory_id,
                embedding=embedding,
                embed_provider=self._embedder.provider,
                embed_model=self._embedder.model_name,
            )
        return True

    @asynccontextmanager
    async def _db_context(self, db: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if db is not None:
            yield db
            return
        async with self._sessionmaker() as local_db:
            async with local_db.begin():
                yield local_db
