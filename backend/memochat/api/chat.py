from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from memochat.core.security import sanitize_text
from memochat.repos.chat_repo import ChatHistoryStore
from memochat.schemas.chat import ChatResponse, ChatTurnOut, ChatTurnRequest
from memochat.services.chat_orchestrator import ChatOrchestrator, get_chat_orchestrator
from memochat.services.rate_limiter import ChatRateLimiter

router = APIRouter(prefix="/api/chat", tags=["chat"])

logger = logging.getLogger(__name__)

MAX_MESSAGE_LEN = 8000
MAX_SESSION_ID_LEN = 64


def get_chat_history(request: Request) -> ChatHistoryStore:
    """Dependency to access chat history persistence from app state."""

    return request.app.state.chat_history


def get_rate_limiter(request: Request) -> ChatRateLimiter:
    return request.app.state.chat_rate_limiter


@router.post("/{session_id}/turn", response_model=ChatResponse)
async def chat_turn(
    session_id: str,
    payload: ChatTurnRequest,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    history: ChatHistoryStore = Depends(get_chat_history),
    limiter: ChatRateLimiter = Depends(get_rate_limiter),
) -> ChatResponse:
    """Run one chat turn and persist both sides of the exchange."""

    session_id = _validate_session_id(session_id)
    message = sanitize_text(payload.message, MAX_MESSAGE_LEN)
    if not message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is empty")

    decision = limiter.check(message)
    if decision.too_long:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=decision.reason)
    if not decision.allowed:
        logger.info("Chat turn for session %s rate limited: %s", session_id, decision.reason)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=decision.reason,
            headers={"Retry-After": str(decision.retry_after_sec)},
        )
    limiter.record()

    await history.add_turn(session_id, message, is_user=True)
    response = await orchestrator.handle_turn(message, session_id)
    failed = response.error is not None or response.payment_required
    await history.add_turn(session_id, response.answer, is_user=False, is_error=failed)
    if failed:
        logger.info("Chat turn for session %s ended without an answer", session_id)
    return response


@router.get("/{session_id}/history", response_model=list[ChatTurnOut])
async def chat_history(
    session_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    history: ChatHistoryStore = Depends(get_chat_history),
) -> list[ChatTurnOut]:
    """Return the most recent turns of a session, oldest first."""

    session_id = _validate_session_id(session_id)
    turns = await history.recent_turns(session_id, limit)
    return [ChatTurnOut.model_validate(turn) for turn in turns]


def _validate_session_id(session_id: str) -> str:
    cleaned = session_id.strip()
    if not cleaned or len(cleaned) > MAX_SESSION_ID_LEN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid session id"
        )
    return cleaned
