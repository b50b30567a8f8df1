from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Union


@dataclass(frozen=True)
class MemoryRecord:
    """Encrypted-at-rest user memory, immutable once created."""

    id: str
    storage_pointer: str
    created_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchHit:
    """Ranked memory identifier returned by semantic search."""

    memory_id: str
    score: float


@dataclass(frozen=True)
class SearchSuccess:
    hits: list[SearchHit]


@dataclass(frozen=True)
class SearchEmpty:
    reason: str


@dataclass(frozen=True)
class SearchError:
    reason: str


SearchOutcome = Union[SearchSuccess, SearchEmpty, SearchError]


@dataclass(frozen=True)
class ConversationTurn:
    """One message in a chat session as seen by the orchestrator."""

    id: str
    text: str
    is_user: bool
    timestamp: datetime
    is_error: bool = False


@dataclass(frozen=True)
class MemoryContext:
    """Decrypted memory plaintext in ranked order, ready for prompting."""

    memory_id: str
    content: str
    score: float
