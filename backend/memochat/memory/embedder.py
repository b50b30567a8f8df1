from __future__ import annotations

import hashlib
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Optional

import httpx

from memochat.core.config import Settings

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when embedding generation fails."""


class Embedder(ABC):
    """Turns memory text and search queries into unit vectors."""

    provider: str
    model_name: str
    dimension: int

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate one vector per input text."""


class HashingEmbedder(Embedder):
    """Offline feature-hashing embedder for local runs and tests.

    CJK characters are hashed as single tokens and also as bigrams so that
    short Chinese queries still overlap with longer memories.
    """

    provider = "deterministic"

    def __init__(self, dimension: int, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        features = self._features(text.strip().casefold())
        if not features:
            vector[0] = 1.0
            return vector
        for feature in features:
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            index = int.from_bytes(digest[:4], byteorder="big") % self.dimension
            sign = 1.0 if digest[4] & 1 == 0 else -1.0
            vector[index] += sign
        return normalize_vector(vector)

    @staticmethod
    def _features(text: str) -> list[str]:
        features: list[str] = []
        word: list[str] = []
        cjk_run: list[str] = []

        def flush_word() -> None:
            if word:
                features.append("".join(word))
                word.clear()

        def flush_cjk() -> None:
            features.extend(cjk_run)
            features.extend(a + b for a, b in zip(cjk_run, cjk_run[1:]))
            cjk_run.clear()

        for ch in text:
            if _is_cjk(ch):
                flush_word()
                cjk_run.append(ch)
            elif ch.isalnum():
                flush_cjk()
                word.append(ch)
            else:
                flush_word()
                flush_cjk()
        flush_word()
        flush_cjk()
        return features


class OpenAIEmbedder(Embedder):
    """OpenAI-compatible `/v1/embeddings` client."""

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimension: int,
        timeout_sec: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        if not api_key.strip():
            raise EmbeddingError("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimension = int(dimension)
        self._timeout_sec = timeout_sec
        self._api_key = api_key
        self._client = http_client
        self._endpoint = f"{base_url.rstrip('/')}/v1/embeddings"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self.model_name, "input": list(texts)}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client:
                response = await self._client.post(self._endpoint, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
                    response = await client.post(self._endpoint, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingError("Embedding request failed") from exc

        return [normalize_vector(vector) for vector in self._parse(data, len(texts))]

    def _parse(self, payload: Any, expected_size: int) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected_size:
            raise EmbeddingError("Embedding response shape is invalid")
        vectors: list[list[float]] = []
        for row in rows:
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(embedding, list) or len(embedding) != self.dimension:
                raise EmbeddingError("Embedding row has no vector of the expected dimension")
            try:
                vectors.append([float(value) for value in embedding])
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("Embedding contains non-numeric values") from exc
        return vectors


def create_embedder(settings: Settings) -> Embedder:
    """Pick the embedder configured by EMBED_PROVIDER."""

    provider = settings.embed_provider.strip().lower()
    if provider == "openai":
        api_key = settings.embed_openai_api_key.strip()
        if api_key:
            return OpenAIEmbedder(
                base_url=settings.llm_base_url,
                api_key=api_key,
                model_name=settings.embed_model.strip() or "text-embedding-3-small",
                dimension=settings.embed_dim,
            )
        logger.warning(
            "EMBED_PROVIDER=openai but EMBED_OPENAI_API_KEY is missing; fallback to deterministic"
        )
    elif provider != "deterministic":
        logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)
    return HashingEmbedder(
        dimension=settings.embed_dim,
        model_name=settings.embed_model.strip() or "deterministic-v1",
    )


def normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(item * item for item in vector))
    if norm <= 0:
        return vector
    return [item / norm for item in vector]


def _is_cjk(ch: str) -> bool:
    code = ord(ch)
    return 0x4E00 <= code <= 0x9FFF or 0x3400 <= code <= 0x4DBF
