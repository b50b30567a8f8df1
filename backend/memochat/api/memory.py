from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from memochat.core.security import sanitize_text
from memochat.memory.cache import MemoryCache
from memochat.memory.store import MemoryStore
from memochat.schemas.chat import (
    CacheClearResponse,
    CacheStatsOut,
    MemoryCreateRequest,
    MemoryCreateResponse,
)
from memochat.services.chat_orchestrator import ChatOrchestrator, get_chat_orchestrator

router = APIRouter(prefix="/api/memory", tags=["memory"])

MAX_MEMORY_LEN = 20000
MAX_METADATA_VALUE_LEN = 200


def get_memory_store(request: Request) -> MemoryStore:
    """Dependency to access the encrypted memory store from app state."""

    return request.app.state.memory_store


def get_memory_cache(request: Request) -> MemoryCache:
    return request.app.state.memory_cache


@router.post("", response_model=MemoryCreateResponse)
async def create_memory(
    payload: MemoryCreateRequest,
    store: MemoryStore = Depends(get_memory_store),
) -> MemoryCreateResponse:
    """Encrypt, index and persist a new memory."""

    content = sanitize_text(payload.content, MAX_MEMORY_LEN)
    metadata = {
        key: sanitize_text(value, MAX_METADATA_VALUE_LEN)
        for key, value in payload.metadata.items()
    }
    try:
        record = await store.add_memory(content, metadata)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return MemoryCreateResponse(
        id=record.id,
        storage_pointer=record.storage_pointer,
        created_at=record.created_at,
    )


@router.get("/cache/stats", response_model=CacheStatsOut)
async def cache_stats(cache: MemoryCache = Depends(get_memory_cache)) -> CacheStatsOut:
    stats = cache.stats()
    return CacheStatsOut(
        total_memories=stats.total_memories,
        total_chars=stats.total_chars,
        oldest_cached_at=stats.oldest_cached_at,
    )


@router.post("/cache/clear", response_model=CacheClearResponse)
async def clear_cache(
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> CacheClearResponse:
    """Drop all decrypted plaintext, e.g. after the wallet disconnects."""

    return CacheClearResponse(dropped=orchestrator.clear_decrypted_memories())
