from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from memochat.schemas.common import APIModel


class ChatTurnRequest(APIModel):
    """Payload for one chat turn."""

    message: str = Field(min_length=1, max_length=8000)


class ChatResponse(APIModel):
    """Result of one chat turn; failures are encoded here, never raised."""

    answer: str
    retrieved_memories: list[str] = Field(default_factory=list)
    rewarded_amount: int = 0
    needs_decryption: bool = False
    encrypted_memory_ids: list[str] = Field(default_factory=list)
    payment_required: bool = False
    error: Optional[str] = Field(default=None)


class ChatTurnOut(APIModel):
    """Chat history entry."""

    id: str
    text: str
    is_user: bool
    is_error: bool
    timestamp: datetime


class CacheStatsOut(APIModel):
    total_memories: int
    total_chars: int
    oldest_cached_at: Optional[datetime] = None


class CacheClearResponse(APIModel):
    dropped: int


class MemoryCreateRequest(APIModel):
    """Payload for storing a new encrypted memory."""

    content: str = Field(min_length=1, max_length=20000)
    metadata: dict[str, str] = Field(default_factory=dict)


class MemoryCreateResponse(APIModel):
    id: str
    storage_pointer: str
    created_at: datetime


class PaymentRequirementOut(APIModel):
    chain_id: Optional[str] = None
    asset_id: Optional[str] = None
    amount_atomic: Optional[str] = None
    recipient: Optional[str] = None
    expires_at: Optional[str] = None
    nonce: Optional[str] = None


class PaymentChallengeOut(APIModel):
    """Pending x402 challenge handed to the payment UI."""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body_raw: str = ""
    body_json: Optional[dict[str, Any]] = None
    requirement: PaymentRequirementOut
