from __future__ import annotations

import base64
import json

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from memochat.providers.base import ProviderError
from memochat.services.session_service import BackendSessionManager, Ed25519ChallengeSigner

SEED = "11" * 32
WALLET = "Wallet111"


class BackendStub:
    def __init__(self, login_payload: dict | None = None) -> None:
        self.login_payload = login_payload or {"access_token": "tok-1", "expires_at": 10**15}
        self.challenges = 0
        self.logins: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == "/api/v1/auth/challenge":
            self.challenges += 1
            assert body == {"wallet_address": WALLET}
            return httpx.Response(200, json={"message": f"sign-in nonce {self.challenges}"})
        if request.url.path == "/api/v1/auth/login":
            self.logins.append(body)
            return httpx.Response(200, json=self.login_payload)
        return httpx.Response(404, json={"error": "not found"})


def _manager(client: httpx.AsyncClient, signer=None, wallet: str = WALLET) -> BackendSessionManager:
    return BackendSessionManager(
        base_url="https://backend.test/",
        wallet_address=wallet,
        signer=signer if signer is not None else Ed25519ChallengeSigner.from_seed_hex(SEED),
        http_client=client,
    )


@pytest.mark.anyio
async def test_login_signs_challenge_and_reuses_token():
    backend = BackendStub()
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        manager = _manager(client)
        await manager.ensure_session()
        await manager.ensure_session()

    assert backend.challenges == 1
    assert manager.access_token() == "tok-1"

    login = backend.logins[0]
    public_key = Ed25519PublicKey.from_public_bytes(base64.b64decode(login["public_key"]))
    public_key.verify(base64.b64decode(login["signature"]), b"sign-in nonce 1")


@pytest.mark.anyio
async def test_clear_forces_fresh_login():
    backend = BackendStub(login_payload={"session_token": "tok-2"})
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        manager = _manager(client)
        await manager.ensure_session()
        await manager.clear()
        assert manager.access_token() is None
        await manager.ensure_session()

    assert backend.challenges == 2
    assert manager.access_token() == "tok-2"


@pytest.mark.anyio
async def test_expired_token_triggers_login():
    backend = BackendStub(login_payload={"access_token": "tok-old", "expires_at": 1})
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        manager = _manager(client)
        await manager.ensure_session()
        await manager.ensure_session()

    assert backend.challenges == 2


@pytest.mark.anyio
async def test_missing_token_is_a_parse_error():
    backend = BackendStub(login_payload={"ok": True})
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        manager = _manager(client)
        with pytest.raises(ProviderError) as excinfo:
            await manager.ensure_session()

    assert excinfo.value.code == "SESSION_PARSE_ERROR"
    assert manager.access_token() is None


@pytest.mark.anyio
async def test_missing_wallet_or_signer():
    async with httpx.AsyncClient(transport=httpx.MockTransport(BackendStub())) as client:
        with pytest.raises(ProviderError) as excinfo:
            await _manager(client, wallet="").ensure_session()
        assert excinfo.value.code == "WALLET_NOT_CONNECTED"

        manager = BackendSessionManager(
            base_url="https://backend.test", wallet_address=WALLET, signer=None, http_client=client
        )
        with pytest.raises(ProviderError) as excinfo:
            await manager.ensure_session()
        assert excinfo.value.code == "SIGNER_UNAVAILABLE"


@pytest.mark.anyio
async def test_login_rejection_surfaces_as_unauthorized():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/challenge"):
            return httpx.Response(200, json={"message": "nonce"})
        return httpx.Response(401, json={"message": "bad signature"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProviderError) as excinfo:
            await _manager(client).ensure_session()

    assert excinfo.value.code == "UNAUTHORIZED"
    assert "bad signature" in excinfo.value.message


def test_signer_rejects_bad_seed():
    with pytest.raises(ValueError):
        Ed25519ChallengeSigner.from_seed_hex("not-hex")
