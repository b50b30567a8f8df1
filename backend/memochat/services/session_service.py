from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from memochat.providers.base import HTTPProviderAdapter, ProviderError

logger = logging.getLogger(__name__)


class ChallengeSigner(Protocol):
    """Wallet-side signer for backend login challenges."""

    async def sign(self, message: bytes) -> bytes:
        """Sign the challenge message."""

    def public_key(self) -> bytes:
        """Raw public key bytes matching the signatures."""


class Ed25519ChallengeSigner:
    """Signs challenges with a locally held ed25519 key."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._key = private_key

    @classmethod
    def from_seed_hex(cls, seed_hex: str) -> "Ed25519ChallengeSigner":
        try:
            seed = bytes.fromhex(seed_hex.strip())
        except ValueError as exc:
            raise ValueError("WALLET_SIGNING_SEED must be hex encoded.") from exc
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    async def sign(self, message: bytes) -> bytes:
        return self._key.sign(message)

    def public_key(self) -> bytes:
        return self._key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


class SessionCollaborator(Protocol):
    async def ensure_session(self) -> None:
        """Make sure a valid backend session exists, establishing one if needed."""

    async def clear(self) -> None:
        """Drop the current session so the next ensure_session logs in again."""


@dataclass
class BackendSession:
    access_token: str
    wallet_address: str
    expires_at_ms: int

    def valid_for(self, wallet_address: str, now_ms: int) -> bool:
        return bool(self.access_token) and self.wallet_address == wallet_address and now_ms < self.expires_at_ms


class BackendSessionManager(HTTPProviderAdapter):
    """Challenge/sign/login session against the backend auth API.

    A token is reused while it belongs to the configured wallet and has
    not expired. ``clear()`` forces a fresh login on the next call.
    """

    def __init__(
        self,
        *,
        base_url: str,
        wallet_address: str,
        signer: Optional[ChallengeSigner],
        default_ttl_sec: int = 7 * 24 * 3600,
        timeout_sec: float = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)
        self._base_url = base_url.rstrip("/")
        self._wallet_address = wallet_address
        self._signer = signer
        self._default_ttl_ms = default_ttl_sec * 1000
        self._session: Optional[BackendSession] = None
        self._lock = asyncio.Lock()

    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    async def ensure_session(self) -> None:
        async with self._lock:
            now_ms = _now_ms()
            if self._session and self._session.valid_for(self._wallet_address, now_ms):
                return
            if not self._wallet_address:
                raise ProviderError("WALLET_NOT_CONNECTED", "No wallet address is configured.")
            if self._signer is None:
                raise ProviderError("SIGNER_UNAVAILABLE", "No challenge signer is configured.")

            challenge = await self._request_json(
                "POST",
                f"{self._base_url}/api/v1/auth/challenge",
                json={"wallet_address": self._wallet_address},
            )
            message = challenge.get("message")
            if not isinstance(message, str) or not message:
                raise ProviderError("SESSION_PARSE_ERROR", "Backend challenge has no message.")

            signature = await self._signer.sign(message.encode("utf-8"))
            login = await self._request_json(
                "POST",
                f"{self._base_url}/api/v1/auth/login",
                json={
                    "wallet_address": self._wallet_address,
                    "signature": base64.b64encode(signature).decode("ascii"),
                    "public_key": base64.b64encode(self._signer.public_key()).decode("ascii"),
                },
            )
            token = login.get("access_token") or login.get("session_token") or ""
            if not isinstance(token, str) or not token.strip():
                raise ProviderError("SESSION_PARSE_ERROR", "Backend returned no session token.")

            expires_at = login.get("expires_at")
            if not isinstance(expires_at, int) or isinstance(expires_at, bool):
                expires_at = now_ms + self._default_ttl_ms
            self._session = BackendSession(
                access_token=token.strip(),
                wallet_address=self._wallet_address,
                expires_at_ms=expires_at,
            )
            logger.info("Backend session established (expires_at=%s)", expires_at)

    async def clear(self) -> None:
        async with self._lock:
            self._session = None
        logger.info("Backend session cleared")


class NullSessionManager:
    """Session collaborator for deployments with no backend login."""

    def access_token(self) -> Optional[str]:
        return None

    async def ensure_session(self) -> None:
        return None

    async def clear(self) -> None:
        return None


def _now_ms() -> int:
    return int(time.time() * 1000)
