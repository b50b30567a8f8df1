from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import httpx

from memochat.payments.x402 import PaymentChallenge


@dataclass
class TokenStream:
    """Successful generation: a lazily consumed stream of answer tokens."""

    tokens: AsyncIterator[str]

    async def aclose(self) -> None:
        closer = getattr(self.tokens, "aclose", None)
        if closer is not None:
            await closer()


@dataclass(frozen=True)
class PaymentRequired:
    """Generation was intercepted by an x402 payment challenge."""

    challenge: PaymentChallenge


GenerationOutcome = Union[TokenStream, PaymentRequired]


class LLMAdapter(Protocol):
    """Adapter interface for chat-completion providers."""

    async def stream_chat(self, messages: list[dict]) -> GenerationOutcome:
        """Start a streaming chat completion."""

    async def complete(self, messages: list[dict]) -> str:
        """Run a short non-streaming completion, used by classifiers."""


class ProviderError(RuntimeError):
    """Raised when a provider or collaborator operation fails."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


AUTH_EXPIRED_CODES = frozenset({"UNAUTHORIZED", "SESSION_EXPIRED", "MISSING_TOKEN"})


def is_auth_expired(exc: BaseException) -> bool:
    """True when a ProviderError signalling an expired session sits in the cause chain."""

    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ProviderError) and (
            current.code in AUTH_EXPIRED_CODES or current.status_code == 401
        ):
            return True
        current = current.__cause__ or current.__context__
    return False


def build_status_error(response: httpx.Response) -> ProviderError:
    """Build a normalized provider error from an HTTP response."""

    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Provider returned {status}: {message}"
    if status == 401:
        return ProviderError("UNAUTHORIZED", formatted, status_code=status)
    if status == 402:
        return ProviderError("PAYMENT_REQUIRED", formatted, status_code=status)
    if status in {408, 429}:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_RATE_LIMIT"
        return ProviderError(code, formatted, retryable=True, status_code=status)
    if status >= 500:
        return ProviderError(
            "PROVIDER_UPSTREAM",
            formatted,
            retryable=True,
            status_code=status,
        )
    return ProviderError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def require_api_key(api_key: Optional[str], provider_name: str) -> str:
    """Return an API key or raise a normalized configuration error."""

    if api_key:
        return api_key
    raise ProviderError("API_KEY_REQUIRED", f"API key is required for {provider_name}.")


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from provider JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error from provider.").strip()


class HTTPProviderAdapter:
    """Shared HTTP behavior for provider adapters."""

    def __init__(
        self, timeout_sec: float = 90, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout_sec
        self._client = http_client

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        response = await self._request(method, url, headers=headers, json=json)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc
        if not isinstance(payload, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned invalid JSON payload.")
        return payload

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            if self._client:
                response = await self._client.request(
                    method, url, headers=headers, json=json, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                "Provider connection failed.",
                retryable=True,
            ) from exc
        if response.status_code >= 400:
            raise build_status_error(response)
        return response


class MockAdapter:
    """Offline adapter that streams a canned answer word by word."""

    def __init__(self, completion: str = '{"score": 60}') -> None:
        self._completion = completion

    async def stream_chat(self, messages: list[dict]) -> GenerationOutcome:
        question = ""
        for message in reversed(messages):
            if message.get("role") == "user":
                question = str(message.get("content", "")).strip()
                break
        answer = f"(offline mode) I received your message: {question[:200] or '...'}"
        return TokenStream(tokens=_word_stream(answer))

    async def complete(self, messages: list[dict]) -> str:
        return self._completion


async def _word_stream(text: str) -> AsyncIterator[str]:
    words = text.split(" ")
    for index, word in enumerate(words):
        yield word if index == len(words) - 1 else word + " "
