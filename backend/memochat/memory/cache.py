from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from memochat.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache occupancy."""

    total_memories: int
    total_chars: int
    oldest_cached_at: Optional[datetime] = None


@dataclass(frozen=True)
class _CachedPlaintext:
    content: str
    cached_at: datetime


class MemoryCache:
    """Process-lifetime map of memory id to decrypted plaintext.

    Entries only exist after an authorized decryption. Writes are
    last-writer-wins; two turns decrypting the same memory write identical
    values. ``clear()`` must be called whenever the decryption key holder
    goes away (wallet disconnect), there is no partial invalidation.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _CachedPlaintext] = {}

    def get(self, memory_id: str) -> Optional[str]:
        entry = self._entries.get(memory_id)
        return entry.content if entry else None

    def put(self, memory_id: str, plaintext: str) -> None:
        self._entries[memory_id] = _CachedPlaintext(content=plaintext, cached_at=utc_now())
        logger.debug("Cached plaintext for memory %s", memory_id)

    def clear(self) -> int:
        """Wipe every entry and return how many were dropped."""

        dropped = len(self._entries)
        self._entries.clear()
        logger.info("Memory cache cleared: %s entries dropped", dropped)
        return dropped

    def stats(self) -> CacheStats:
        entries = self._entries.values()
        return CacheStats(
            total_memories=len(self._entries),
            total_chars=sum(len(entry.content) for entry in entries),
            oldest_cached_at=min((entry.cached_at for entry in entries), default=None),
        )

    def __len__(self) -> int:
        return len(self._entries)
