from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Optional, Protocol

import httpx

from memochat.payments.x402 import PaymentChallenge
from memochat.providers.base import (
    GenerationOutcome,
    HTTPProviderAdapter,
    PaymentRequired,
    ProviderError,
    TokenStream,
    build_status_error,
    require_api_key,
)

logger = logging.getLogger(__name__)


class OpenAIAdapter(HTTPProviderAdapter):
    """Adapter for OpenAI-compatible chat-completion APIs.

    Answers are streamed over server-sent events. An HTTP 402 response is
    not an error here: it comes back as a ``PaymentRequired`` outcome
    carrying the captured challenge.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        max_tokens: int = 700,
        timeout_sec: float = 90,
        http_client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional["TokenProvider"] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)
        self._base_url = base_url
        self._api_key = api_key
        self._model_name = model_name
        self._max_tokens = max_tokens
        self._token_provider = token_provider

    async def stream_chat(self, messages: list[dict]) -> GenerationOutcome:
        url = self._join_url(self._base_url, "/v1/chat/completions")
        payload = {
            "model": self._model_name,
            "messages": messages,
            "stream": True,
            "max_tokens": self._max_tokens,
        }
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._client is None
        try:
            request = client.build_request(
                "POST", url, headers=self._auth_headers(), json=payload, timeout=self._timeout
            )
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            await _close_owned(client, owns_client)
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            await _close_owned(client, owns_client)
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                "Provider connection failed.",
                retryable=True,
            ) from exc
        except BaseException:
            await _close_owned(client, owns_client)
            raise

        if response.status_code >= 400:
            try:
                await response.aread()
            finally:
                await response.aclose()
                await _close_owned(client, owns_client)
            if response.status_code == 402:
                logger.info("Generation intercepted by payment challenge")
                return PaymentRequired(challenge=PaymentChallenge.from_response(response))
            raise build_status_error(response)

        return TokenStream(tokens=self._iter_tokens(response, client, owns_client))

    async def complete(self, messages: list[dict]) -> str:
        url = self._join_url(self._base_url, "/v1/chat/completions")
        payload = {"model": self._model_name, "messages": messages, "temperature": 0.2}
        data = await self._request_json("POST", url, headers=self._auth_headers(), json=payload)
        choices = data.get("choices", [])
        if not choices:
            raise ProviderError("PROVIDER_PARSE_ERROR", "No choices returned by provider.")
        content = choices[0].get("message", {}).get("content")
        if not content:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        return content

    async def _iter_tokens(
        self, response: httpx.Response, client: httpx.AsyncClient, owns_client: bool
    ) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                token = _parse_sse_line(line)
                if token is _DONE:
                    break
                if token:
                    yield token
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider stream timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR", "Provider stream was interrupted.", retryable=True
            ) from exc
        finally:
            await response.aclose()
            await _close_owned(client, owns_client)

    def _auth_headers(self) -> dict[str, str]:
        if self._token_provider is not None:
            token = self._token_provider.access_token()
            if token:
                return {"Authorization": f"Bearer {token}"}
            if not (self._api_key or "").strip():
                raise ProviderError("MISSING_TOKEN", "No backend session token is available.")
        api_key = require_api_key(self._api_key, "OpenAI")
        return {"Authorization": f"Bearer {api_key}"}

    @staticmethod
    def _join_url(base_url: Optional[str], path: str) -> str:
        if not base_url:
            raise ProviderError("PROVIDER_BASE_URL_MISSING", "Base URL is required for OpenAI.")
        base = base_url.rstrip("/")
        if base.endswith("/v1") and path.startswith("/v1/"):
            return base + path[3:]
        return base + path


class TokenProvider(Protocol):
    """Anything exposing the current backend session token."""

    def access_token(self) -> Optional[str]:
        """Return the bearer token, or None when no session is active."""


_DONE = object()


def _parse_sse_line(line: str) -> Any:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return _DONE
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not isinstance(choices, list) or not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else None


async def _close_owned(client: httpx.AsyncClient, owns_client: bool) -> None:
    if owns_client:
        await client.aclose()
