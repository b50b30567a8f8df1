from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentChallenge:
    """Opaque HTTP 402 payload captured from the generation service."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body_raw: str = ""
    body_json: Optional[dict[str, Any]] = None

    @classmethod
    def from_response(cls, response: httpx.Response) -> "PaymentChallenge":
        body_raw = response.text or ""
        return cls(
            status_code=response.status_code,
            headers={key.lower(): value for key, value in response.headers.items()},
            body_raw=body_raw,
            body_json=try_parse_json(body_raw),
        )


@dataclass(frozen=True)
class PaymentRequirement:
    """Normalized view over the many x402 requirement shapes seen in the wild."""

    chain_id: Optional[str]
    asset_id: Optional[str]
    amount_atomic: Optional[str]
    recipient: Optional[str]
    expires_at: Optional[str]
    nonce: Optional[str]
    raw: dict[str, Any]


def try_parse_json(raw: str) -> Optional[dict[str, Any]]:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def parse_requirement(challenge: PaymentChallenge) -> PaymentRequirement:
    """Extract the payment requirement from a challenge body."""

    body = challenge.body_json
    req = _requirement_object(body) if body else None

    return PaymentRequirement(
        chain_id=_first_text(req, "caip2ChainId", "caip2_chain_id", "chain", "chainId"),
        asset_id=_first_text(req, "assetId", "asset_id", "asset", "token"),
        amount_atomic=_first_text(req, "amountAtomic", "amount_atomic", "amount")
        or _nested_text(req, "amount", "atomic"),
        recipient=_first_text(req, "recipient", "address")
        or _nested_text(req, "recipient", "address"),
        expires_at=_first_text(req, "expiresAt", "expires_at"),
        nonce=_first_text(req, "nonce", "requestId", "id"),
        raw=body if body is not None else {"raw": challenge.body_raw},
    )


def _requirement_object(body: dict[str, Any]) -> Optional[dict[str, Any]]:
    for key in ("paymentRequirement", "payment_requirement", "requirement"):
        candidate = body.get(key)
        if isinstance(candidate, dict):
            return candidate
    for key in ("paymentRequirements", "payment_requirements"):
        candidates = body.get(key)
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            return candidates[0]
    return None


def _first_text(source: Optional[dict[str, Any]], *keys: str) -> Optional[str]:
    if not source:
        return None
    for key in keys:
        value = source.get(key)
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            text = str(value).strip()
            if text:
                return text
    return None


def _nested_text(source: Optional[dict[str, Any]], key: str, inner: str) -> Optional[str]:
    if not source:
        return None
    nested = source.get(key)
    return _first_text(nested, inner) if isinstance(nested, dict) else None


class PaymentChallengeChannel:
    """Single-slot, overwrite-on-publish hand-off to the payment UI."""

    def __init__(self) -> None:
        self._pending: Optional[PaymentChallenge] = None
        self._lock = asyncio.Lock()

    async def publish(self, challenge: PaymentChallenge) -> Optional[PaymentChallenge]:
        """Store the challenge and return the one it replaced, if any."""

        async with self._lock:
            previous, self._pending = self._pending, challenge
        if previous is not None:
            logger.info("Pending payment challenge replaced before it was consumed")
        return previous

    async def consume(self) -> Optional[PaymentChallenge]:
        async with self._lock:
            pending, self._pending = self._pending, None
        return pending

    def peek(self) -> Optional[PaymentChallenge]:
        return self._pending
