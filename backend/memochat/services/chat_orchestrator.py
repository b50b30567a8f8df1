from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Union

from fastapi import Request

from memochat.memory.cache import MemoryCache
from memochat.memory.decryption import AuthContext, AuthorizationGuard, DecryptionCollaborator
from memochat.memory.search import SearchCollaborator
from memochat.memory.types import ConversationTurn, MemoryContext, SearchSuccess
from memochat.payments.x402 import PaymentChallengeChannel
from memochat.providers.base import PaymentRequired, ProviderError, TokenStream, is_auth_expired
from memochat.schemas.chat import ChatResponse
from memochat.services.background import BackgroundTaskManager
from memochat.services.generation_service import GenerationCollaborator
from memochat.services.persona_service import PersonaReinforcer
from memochat.services.prompt_builder import PromptBuilder
from memochat.services.resonance import ResonanceScorer
from memochat.services.reward_service import RewardCollaborator
from memochat.services.session_service import SessionCollaborator

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_ANSWER = (
    "Payment verification is required before I can answer. "
    "Please complete the payment and send your message again."
)
ERROR_ANSWER_PREFIX = "Sorry, I couldn't answer that just now"


class ChatHistorySource(Protocol):
    async def recent_turns(self, session_id: str, limit: int) -> list[ConversationTurn]:
        """Most recent turns of a session in ascending order."""


@dataclass(frozen=True)
class OrchestratorConfig:
    search_top_k: int = 5
    search_threshold: float = 0.5
    history_window: int = 12
    generation_timeout_sec: float = 60.0
    preview_count: int = 3
    preview_chars: int = 100
    no_memory_marker: str = "[NO_MEMORY]"
    use_persona: bool = True
    resonance_bonus_threshold: int = 70


@dataclass(frozen=True)
class _Failed:
    error: Exception


_Attempt = Union[ChatResponse, PaymentRequired, _Failed]


class ChatOrchestrator:
    """Turns one user message into a ChatResponse.

    A turn runs session check, first-chat reward, retrieval, cache split,
    one batched decryption, generation and the per-turn reward, in that
    order. Resonance scoring and persona reinforcement are spawned in the
    background afterwards. Payment challenges end the turn; an expired
    session is reset and the turn retried exactly once. Every other
    failure comes back as an error ChatResponse.
    """

    def __init__(
        self,
        *,
        search: SearchCollaborator,
        decryptor: DecryptionCollaborator,
        cache: MemoryCache,
        generator: GenerationCollaborator,
        rewards: RewardCollaborator,
        session: SessionCollaborator,
        payment_channel: PaymentChallengeChannel,
        history: ChatHistorySource,
        prompt_builder: PromptBuilder,
        resonance: ResonanceScorer,
        persona: PersonaReinforcer,
        background: BackgroundTaskManager,
        guard: Optional[AuthorizationGuard] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self._search = search
        self._decryptor = decryptor
        self._cache = cache
        self._generator = generator
        self._rewards = rewards
        self._session = session
        self._payment_channel = payment_channel
        self._history = history
        self._prompt_builder = prompt_builder
        self._resonance = resonance
        self._persona = persona
        self._background = background
        self._guard = guard or AuthorizationGuard()
        self._config = config or OrchestratorConfig()

    async def handle_turn(self, message: str, session_id: str) -> ChatResponse:
        attempt = await self._attempt(message, session_id)
        if isinstance(attempt, _Failed) and is_auth_expired(attempt.error):
            logger.info("Session expired during turn; resetting session and retrying once")
            try:
                await self._session.clear()
                await self._session.ensure_session()
            except Exception as exc:  # noqa: BLE001
                return self._error_response(exc)
            attempt = await self._attempt(message, session_id)
        return await self._finish(attempt)

    def clear_decrypted_memories(self) -> int:
        """Wipe cached plaintext when the decryption key holder goes away."""

        self._guard.reset()
        return self._cache.clear()

    async def _attempt(self, message: str, session_id: str) -> _Attempt:
        try:
            return await self._run_turn(message, session_id)
        except Exception as exc:  # noqa: BLE001
            return _Failed(exc)

    async def _finish(self, attempt: _Attempt) -> ChatResponse:
        if isinstance(attempt, PaymentRequired):
            await self._payment_channel.publish(attempt.challenge)
            return ChatResponse(answer=PAYMENT_REQUIRED_ANSWER, payment_required=True)
        if isinstance(attempt, _Failed):
            return self._error_response(attempt.error)
        return attempt

    async def _run_turn(self, message: str, session_id: str) -> Union[ChatResponse, PaymentRequired]:
        await self._session.ensure_session()
        await self._reward_first_chat()

        text = message.strip()
        turns = await self._history.recent_turns(session_id, self._config.history_window)
        history = self._prompt_builder.build_history(turns, text)

        marker = self._config.no_memory_marker
        if marker and text.startswith(marker):
            query = text[len(marker) :].strip()
            return await self._respond(query, history, contexts=[], encrypted_ids=[])

        if not await self._has_memories():
            return await self._respond(text, history, contexts=[], encrypted_ids=[])

        search_query = self._prompt_builder.build_search_query(turns, text)
        outcome = await self._search.search(
            search_query, self._config.search_top_k, self._config.search_threshold
        )
        if not isinstance(outcome, SearchSuccess) or not outcome.hits:
            logger.debug("No retrieval context: %s", getattr(outcome, "reason", "no hits"))
            return await self._respond(text, history, contexts=[], encrypted_ids=[])

        hits = outcome.hits
        plaintexts: dict[str, str] = {}
        needs_decryption: list[str] = []
        for hit in hits:
            cached = self._cache.get(hit.memory_id)
            if cached is None:
                needs_decryption.append(hit.memory_id)
            else:
                plaintexts[hit.memory_id] = cached

        if needs_decryption:
            plaintexts.update(await self._decrypt(needs_decryption, session_id))

        contexts = [
            MemoryContext(memory_id=hit.memory_id, content=plaintexts[hit.memory_id], score=hit.score)
            for hit in hits
            if hit.memory_id in plaintexts
        ]
        encrypted_ids = [memory_id for memory_id in needs_decryption if memory_id not in plaintexts]
        return await self._respond(text, history, contexts=contexts, encrypted_ids=encrypted_ids)

    async def _decrypt(self, memory_ids: Sequence[str], session_id: str) -> dict[str, str]:
        """One authorization for the whole batch; results written through to the cache."""

        if not self._guard.allow():
            logger.info("Decryption prompt suppressed for %s memories (cooldown)", len(memory_ids))
            return {}
        auth_context = AuthContext(
            session_id=session_id, purpose="chat_context", memory_count=len(memory_ids)
        )
        try:
            decrypted = await self._decryptor.decrypt_batch(list(memory_ids), auth_context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Batch decryption failed: %s", exc)
            decrypted = {}
        for memory_id, plaintext in decrypted.items():
            self._cache.put(memory_id, plaintext)
        self._guard.record(len(decrypted))
        logger.info("Decrypted %s of %s memories", len(decrypted), len(memory_ids))
        return decrypted

    async def _respond(
        self,
        query: str,
        history: list[dict],
        *,
        contexts: list[MemoryContext],
        encrypted_ids: list[str],
    ) -> Union[ChatResponse, PaymentRequired]:
        extra_context = self._prompt_builder.build_memory_context(contexts) if contexts else None
        try:
            answer = await asyncio.wait_for(
                self._generate_answer(query, history, extra_context),
                timeout=self._config.generation_timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                "GENERATION_TIMEOUT",
                f"Generation exceeded {self._config.generation_timeout_sec}s.",
                retryable=True,
            ) from exc
        if isinstance(answer, PaymentRequired):
            return answer

        rewarded = await self._reward_inference()
        self._background.spawn(self._analyze(query), name="turn-analysis")
        return ChatResponse(
            answer=answer,
            retrieved_memories=self._previews(contexts),
            rewarded_amount=rewarded,
            needs_decryption=bool(encrypted_ids),
            encrypted_memory_ids=encrypted_ids,
        )

    async def _generate_answer(
        self, query: str, history: list[dict], extra_context: Optional[str]
    ) -> Union[str, PaymentRequired]:
        outcome = await self._generator.generate(
            query, history, self._config.use_persona, extra_context
        )
        if isinstance(outcome, PaymentRequired):
            return outcome
        return await self._collect(outcome)

    @staticmethod
    async def _collect(stream: TokenStream) -> str:
        parts: list[str] = []
        try:
            async for token in stream.tokens:
                parts.append(token)
        finally:
            await stream.aclose()
        answer = "".join(parts).strip()
        if not answer:
            raise ProviderError("EMPTY_ANSWER", "The model returned an empty answer.")
        return answer

    async def _analyze(self, message: str) -> None:
        try:
            result = await self._resonance.score(message)
            if result.score >= self._config.resonance_bonus_threshold:
                await self._rewards.reward_resonance_bonus(result.score)
        except Exception:  # noqa: BLE001
            logger.exception("Resonance analysis failed")
        await self._persona.reinforce(message)

    async def _has_memories(self) -> bool:
        try:
            return await self._search.count_memories() > 0
        except Exception as exc:  # noqa: BLE001
            logger.warning("Memory count unavailable, trying search anyway: %s", exc)
            return True

    async def _reward_first_chat(self) -> None:
        try:
            await self._rewards.reward_first_chat_of_day()
        except Exception as exc:  # noqa: BLE001
            logger.warning("First chat reward failed: %s", exc)

    async def _reward_inference(self) -> int:
        try:
            return await self._rewards.reward_inference()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Inference reward failed: %s", exc)
            return 0

    def _previews(self, contexts: Sequence[MemoryContext]) -> list[str]:
        limit = self._config.preview_chars
        previews: list[str] = []
        for memory in contexts[: self._config.preview_count]:
            text = " ".join(memory.content.split())
            previews.append(text if len(text) <= limit else text[:limit] + "...")
        return previews

    @staticmethod
    def _error_response(exc: Exception) -> ChatResponse:
        detail = exc.message if isinstance(exc, ProviderError) else str(exc)
        detail = detail or type(exc).__name__
        logger.warning("Chat turn failed: %s", detail)
        return ChatResponse(answer=f"{ERROR_ANSWER_PREFIX}: {detail}", error=detail)


def get_chat_orchestrator(request: Request) -> ChatOrchestrator:
    """Dependency to access the chat orchestrator from app state."""

    return request.app.state.chat_orchestrator
