from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import httpx
import pytest

from memochat.memory.cache import MemoryCache
from memochat.memory.decryption import AuthorizationGuard
from memochat.memory.types import ConversationTurn, SearchError, SearchHit, SearchSuccess
from memochat.payments.x402 import PaymentChallenge, PaymentChallengeChannel
from memochat.providers.base import PaymentRequired, ProviderError, TokenStream
from memochat.providers.openai_adapter import OpenAIAdapter
from memochat.services.background import BackgroundTaskManager
from memochat.services.chat_orchestrator import (
    PAYMENT_REQUIRED_ANSWER,
    ChatOrchestrator,
    OrchestratorConfig,
)
from memochat.services.prompt_builder import MEMORY_CONTEXT_PREFIX, PromptBuilder
from memochat.services.resonance import ResonanceScore
from memochat.utils.time_utils import utc_now


async def _tokens(*parts: str):
    for part in parts:
        yield part


class StubSearch:
    def __init__(self, outcome: Any = None, count: int = 1) -> None:
        self.outcome = outcome if outcome is not None else SearchSuccess(hits=[])
        self.count = count
        self.calls: list[tuple[str, int, float]] = []

    async def search(self, query: str, top_k: int, threshold: float):
        self.calls.append((query, top_k, threshold))
        return self.outcome

    async def count_memories(self) -> int:
        return self.count


class StubDecryptor:
    def __init__(self, plaintexts: Optional[dict[str, str]] = None) -> None:
        self.plaintexts = plaintexts or {}
        self.calls: list[tuple[list[str], Any]] = []

    async def decrypt_batch(self, memory_ids, auth_context):
        self.calls.append((list(memory_ids), auth_context))
        return {key: value for key, value in self.plaintexts.items() if key in memory_ids}


class StubGenerator:
    """Replays scripted outcomes; a callable step is invoked with the call record."""

    def __init__(self, *steps: Any) -> None:
        self.steps = list(steps) or ["Hello there."]
        self.calls: list[dict] = []

    async def generate(self, query, history, persona, extra_context=None):
        call = {
            "query": query,
            "history": list(history),
            "persona": persona,
            "extra_context": extra_context,
        }
        self.calls.append(call)
        step = self.steps[min(len(self.calls), len(self.steps)) - 1]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, PaymentRequired):
            return step
        if callable(step):
            return step(call)
        return TokenStream(tokens=_tokens(*(word + " " for word in step.split(" "))))


class StubRewards:
    def __init__(self, inference: int = 10, fail_first_chat: bool = False) -> None:
        self.inference = inference
        self.fail_first_chat = fail_first_chat
        self.inference_calls = 0
        self.first_chat_calls = 0
        self.bonus_scores: list[int] = []

    async def reward_inference(self) -> int:
        self.inference_calls += 1
        return self.inference

    async def reward_resonance_bonus(self, score: int) -> int:
        self.bonus_scores.append(score)
        return 20

    async def reward_first_chat_of_day(self) -> int:
        self.first_chat_calls += 1
        if self.fail_first_chat:
            raise RuntimeError("ledger offline")
        return 30


class StubSession:
    def __init__(self, ensure_error: Optional[Exception] = None) -> None:
        self.ensure_error = ensure_error
        self.ensure_calls = 0
        self.clear_calls = 0

    async def ensure_session(self) -> None:
        self.ensure_calls += 1
        if self.ensure_error is not None:
            raise self.ensure_error

    async def clear(self) -> None:
        self.clear_calls += 1


class StubHistory:
    def __init__(self, turns: Optional[list[ConversationTurn]] = None) -> None:
        self.turns = turns or []

    async def recent_turns(self, session_id: str, limit: int) -> list[ConversationTurn]:
        return self.turns[-limit:]


class StubResonance:
    def __init__(self, score: int = 50) -> None:
        self.value = score
        self.messages: list[str] = []

    async def score(self, message: str) -> ResonanceScore:
        self.messages.append(message)
        return ResonanceScore(self.value, "B", "stub")


class StubPersona:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def reinforce(self, message: str) -> bool:
        self.messages.append(message)
        return False


def _turn(text: str, is_user: bool, is_error: bool = False) -> ConversationTurn:
    return ConversationTurn(
        id=text, text=text, is_user=is_user, timestamp=utc_now(), is_error=is_error
    )


def _hits(*pairs: tuple[str, float]) -> SearchSuccess:
    return SearchSuccess(hits=[SearchHit(memory_id=key, score=score) for key, score in pairs])


def build(
    *,
    search: Optional[StubSearch] = None,
    decryptor: Optional[StubDecryptor] = None,
    generator: Optional[StubGenerator] = None,
    rewards: Optional[StubRewards] = None,
    session: Optional[StubSession] = None,
    history: Optional[StubHistory] = None,
    resonance: Optional[StubResonance] = None,
    cache: Optional[MemoryCache] = None,
    guard: Optional[AuthorizationGuard] = None,
    **config: Any,
) -> tuple[ChatOrchestrator, dict[str, Any]]:
    parts: dict[str, Any] = {
        "search": search or StubSearch(),
        "decryptor": decryptor or StubDecryptor(),
        "generator": generator or StubGenerator(),
        "rewards": rewards or StubRewards(),
        "session": session or StubSession(),
        "history": history or StubHistory(),
        "resonance": resonance or StubResonance(),
        "persona": StubPersona(),
        "cache": cache if cache is not None else MemoryCache(),
        "payment_channel": PaymentChallengeChannel(),
        "background": BackgroundTaskManager(),
    }
    orchestrator = ChatOrchestrator(
        search=parts["search"],
        decryptor=parts["decryptor"],
        cache=parts["cache"],
        generator=parts["generator"],
        rewards=parts["rewards"],
        session=parts["session"],
        payment_channel=parts["payment_channel"],
        history=parts["history"],
        prompt_builder=PromptBuilder(),
        resonance=parts["resonance"],
        persona=parts["persona"],
        background=parts["background"],
        guard=guard,
        config=OrchestratorConfig(**config),
    )
    return orchestrator, parts


@pytest.mark.anyio
async def test_no_memory_marker_skips_retrieval():
    search = StubSearch(_hits(("m1", 0.9)))
    decryptor = StubDecryptor({"m1": "secret"})
    orchestrator, parts = build(search=search, decryptor=decryptor)

    first = await orchestrator.handle_turn("[NO_MEMORY] what is the weather like", "s1")
    second = await orchestrator.handle_turn("[NO_MEMORY] what is the weather like", "s1")

    assert search.calls == []
    assert decryptor.calls == []
    assert first.answer == second.answer == "Hello there."
    assert first.retrieved_memories == []
    assert parts["generator"].calls[0]["query"] == "what is the weather like"
    assert parts["generator"].calls[0]["extra_context"] is None
    await parts["background"].drain()


@pytest.mark.anyio
async def test_zero_memories_never_searches():
    search = StubSearch(_hits(("m1", 0.9)), count=0)
    orchestrator, parts = build(search=search)

    response = await orchestrator.handle_turn("tell me about my trip", "s1")

    assert search.calls == []
    assert response.error is None
    assert response.needs_decryption is False
    await parts["background"].drain()


@pytest.mark.anyio
async def test_single_batched_authorization_and_write_through():
    cache = MemoryCache()
    cache.put("m2", "cached memory two")
    seen_cache: dict[str, Optional[str]] = {}

    def capture(call: dict) -> TokenStream:
        seen_cache.update({key: cache.get(key) for key in ("m1", "m2", "m3")})
        return TokenStream(tokens=_tokens("ok"))

    search = StubSearch(_hits(("m1", 0.9), ("m2", 0.8), ("m3", 0.7)))
    decryptor = StubDecryptor({"m1": "plain one", "m3": "plain three"})
    generator = StubGenerator(capture)
    orchestrator, parts = build(
        search=search, decryptor=decryptor, generator=generator, cache=cache
    )

    response = await orchestrator.handle_turn("where did I travel last summer", "s1")

    assert len(decryptor.calls) == 1
    ids, auth_context = decryptor.calls[0]
    assert ids == ["m1", "m3"]
    assert auth_context.memory_count == 2
    assert auth_context.session_id == "s1"
    assert seen_cache == {"m1": "plain one", "m2": "cached memory two", "m3": "plain three"}

    context = generator.calls[0]["extra_context"]
    assert context.startswith(MEMORY_CONTEXT_PREFIX)
    assert context.index("plain one") < context.index("cached memory two") < context.index("plain three")
    assert response.retrieved_memories == ["plain one", "cached memory two", "plain three"]
    assert response.needs_decryption is False
    assert response.encrypted_memory_ids == []
    await parts["background"].drain()


@pytest.mark.anyio
async def test_all_cached_never_decrypts():
    cache = MemoryCache()
    cache.put("m1", "first")
    cache.put("m2", "second")
    decryptor = StubDecryptor({"m1": "first", "m2": "second"})
    orchestrator, parts = build(
        search=StubSearch(_hits(("m1", 0.9), ("m2", 0.6))), decryptor=decryptor, cache=cache
    )

    response = await orchestrator.handle_turn("remind me of something", "s1")

    assert decryptor.calls == []
    assert response.retrieved_memories == ["first", "second"]
    await parts["background"].drain()


@pytest.mark.anyio
async def test_cache_clear_forces_new_authorization():
    decryptor = StubDecryptor({"m1": "plain one"})
    orchestrator, parts = build(search=StubSearch(_hits(("m1", 0.9))), decryptor=decryptor)

    await orchestrator.handle_turn("what did I write yesterday", "s1")
    await orchestrator.handle_turn("what did I write yesterday", "s1")
    assert len(decryptor.calls) == 1

    assert orchestrator.clear_decrypted_memories() == 1
    assert len(parts["cache"]) == 0

    await orchestrator.handle_turn("what did I write yesterday", "s1")
    assert len(decryptor.calls) == 2
    await parts["background"].drain()


@pytest.mark.anyio
async def test_denied_decryption_falls_back_without_context():
    decryptor = StubDecryptor({})
    generator = StubGenerator("Plain answer.")
    orchestrator, parts = build(
        search=StubSearch(_hits(("m1", 0.9), ("m2", 0.8))),
        decryptor=decryptor,
        generator=generator,
    )

    response = await orchestrator.handle_turn("what did I plan for today", "s1")

    assert response.answer == "Plain answer."
    assert response.needs_decryption is True
    assert response.encrypted_memory_ids == ["m1", "m2"]
    assert response.retrieved_memories == []
    assert generator.calls[0]["extra_context"] is None
    assert response.rewarded_amount == 10
    await parts["background"].drain()


@pytest.mark.anyio
async def test_guard_suppresses_prompts_after_repeated_denials():
    now = [100.0]
    guard = AuthorizationGuard(failure_limit=3, cooldown_sec=60, clock=lambda: now[0])
    decryptor = StubDecryptor({})
    orchestrator, parts = build(
        search=StubSearch(_hits(("m1", 0.9))), decryptor=decryptor, guard=guard
    )

    for _ in range(4):
        response = await orchestrator.handle_turn("what was the name of that cafe", "s1")

    assert len(decryptor.calls) == 3
    assert response.encrypted_memory_ids == ["m1"]

    now[0] += 61
    await orchestrator.handle_turn("what was the name of that cafe", "s1")
    assert len(decryptor.calls) == 4
    await parts["background"].drain()


@pytest.mark.anyio
async def test_search_error_degrades_to_plain_generation():
    decryptor = StubDecryptor({"m1": "x"})
    generator = StubGenerator("Still answering.")
    orchestrator, parts = build(
        search=StubSearch(SearchError(reason="index offline")),
        decryptor=decryptor,
        generator=generator,
    )

    response = await orchestrator.handle_turn("anything about my dog", "s1")

    assert response.answer == "Still answering."
    assert response.error is None
    assert decryptor.calls == []
    assert generator.calls[0]["extra_context"] is None
    await parts["background"].drain()


@pytest.mark.anyio
async def test_search_query_uses_previous_user_turn():
    search = StubSearch(_hits())
    history = StubHistory(
        [
            _turn("I adopted a cat in March", True),
            _turn("That sounds lovely!", False),
            _turn("what is her name again", True),
        ]
    )
    orchestrator, parts = build(search=search, history=history)

    await orchestrator.handle_turn("what is her name again", "s1")

    assert search.calls[0] == ("I adopted a cat in March\nwhat is her name again", 5, 0.5)
    sent_history = parts["generator"].calls[0]["history"]
    assert sent_history == [
        {"role": "user", "content": "I adopted a cat in March"},
        {"role": "assistant", "content": "That sounds lovely!"},
    ]
    await parts["background"].drain()


@pytest.mark.anyio
async def test_reward_is_fixed_per_turn():
    generator = StubGenerator("Short.", "A much longer answer with many more tokens in it.")
    orchestrator, parts = build(generator=generator)

    short = await orchestrator.handle_turn("first question here", "s1")
    long = await orchestrator.handle_turn("second question here", "s1")

    assert short.rewarded_amount == long.rewarded_amount == 10
    assert parts["rewards"].inference_calls == 2
    await parts["background"].drain()


@pytest.mark.anyio
async def test_first_chat_reward_failure_is_swallowed():
    rewards = StubRewards(fail_first_chat=True)
    orchestrator, parts = build(rewards=rewards)

    response = await orchestrator.handle_turn("good morning, how are you", "s1")

    assert response.error is None
    assert rewards.first_chat_calls == 1
    await parts["background"].drain()


@pytest.mark.anyio
async def test_payment_required_short_circuits_turn():
    challenge = PaymentChallenge(status_code=402, body_raw='{"nonce": "n1"}')
    generator = StubGenerator(PaymentRequired(challenge=challenge))
    decryptor = StubDecryptor({"m1": "plain"})
    orchestrator, parts = build(
        search=StubSearch(_hits(("m1", 0.9))), decryptor=decryptor, generator=generator
    )

    response = await orchestrator.handle_turn("tell me about my notes", "s1")

    assert response.answer == PAYMENT_REQUIRED_ANSWER
    assert response.payment_required is True
    assert response.rewarded_amount == 0
    assert response.retrieved_memories == []
    assert len(generator.calls) == 1
    assert parts["rewards"].inference_calls == 0
    assert parts["background"].active_count == 0
    assert await parts["payment_channel"].consume() is challenge


@pytest.mark.anyio
async def test_unauthorized_resets_session_and_retries_once():
    generator = StubGenerator(
        ProviderError("UNAUTHORIZED", "token expired", status_code=401), "Welcome back."
    )
    session = StubSession()
    orchestrator, parts = build(generator=generator, session=session)

    response = await orchestrator.handle_turn("are you still there", "s1")

    assert response.answer == "Welcome back."
    assert response.error is None
    assert session.clear_calls == 1
    assert session.ensure_calls == 3
    assert len(generator.calls) == 2
    await parts["background"].drain()


@pytest.mark.anyio
async def test_unauthorized_detected_through_cause_chain():
    try:
        try:
            raise ProviderError("PROVIDER_BAD_STATUS", "denied", status_code=401)
        except ProviderError as inner:
            raise RuntimeError("stream failed") from inner
    except RuntimeError as wrapped:
        error = wrapped
    generator = StubGenerator(error, "Recovered.")
    orchestrator, parts = build(generator=generator)

    response = await orchestrator.handle_turn("are you still there", "s1")

    assert response.answer == "Recovered."
    assert parts["session"].clear_calls == 1
    await parts["background"].drain()


class TokenSession(StubSession):
    """Session whose token only appears once it has been re-established."""

    def __init__(self) -> None:
        super().__init__()
        self.token: Optional[str] = None

    async def ensure_session(self) -> None:
        await super().ensure_session()
        if self.ensure_calls >= 2:
            self.token = "fresh-token"

    async def clear(self) -> None:
        await super().clear()
        self.token = None

    def access_token(self) -> Optional[str]:
        return self.token


class AdapterGenerator:
    def __init__(self, adapter: OpenAIAdapter) -> None:
        self.adapter = adapter

    async def generate(self, query, history, persona, extra_context=None):
        return await self.adapter.stream_chat([*history, {"role": "user", "content": query}])


@pytest.mark.anyio
async def test_missing_session_token_resets_session_and_retries():
    seen: list[Optional[str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("authorization"))
        body = "data: " + json.dumps({"choices": [{"delta": {"content": "Signed in."}}]})
        return httpx.Response(
            200,
            content=(body + "\n\ndata: [DONE]\n\n").encode("utf-8"),
            headers={"content-type": "text/event-stream"},
        )

    session = TokenSession()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenAIAdapter(
            base_url="https://backend.test",
            api_key="",
            model_name="m",
            http_client=client,
            token_provider=session,
        )
        orchestrator, parts = build(generator=AdapterGenerator(adapter), session=session)

        response = await orchestrator.handle_turn("are you still there", "s1")
        await parts["background"].drain()

    assert response.error is None
    assert response.answer == "Signed in."
    assert session.clear_calls == 1
    assert seen == ["Bearer fresh-token"]


@pytest.mark.anyio
async def test_second_unauthorized_is_not_retried():
    failure = ProviderError("UNAUTHORIZED", "still expired", status_code=401)
    generator = StubGenerator(failure, failure, "never reached")
    orchestrator, parts = build(generator=generator)

    response = await orchestrator.handle_turn("are you still there", "s1")

    assert len(generator.calls) == 2
    assert response.error == "still expired"
    assert response.rewarded_amount == 0
    assert parts["session"].clear_calls == 1


@pytest.mark.anyio
async def test_other_failures_are_not_retried():
    generator = StubGenerator(ProviderError("PROVIDER_UPSTREAM", "upstream down", retryable=True))
    orchestrator, parts = build(generator=generator)

    response = await orchestrator.handle_turn("hello again friend", "s1")

    assert len(generator.calls) == 1
    assert response.error == "upstream down"
    assert "upstream down" in response.answer
    assert parts["session"].clear_calls == 0


@pytest.mark.anyio
async def test_session_failure_aborts_turn():
    session = StubSession(ensure_error=ProviderError("WALLET_NOT_CONNECTED", "connect a wallet"))
    orchestrator, parts = build(session=session)

    response = await orchestrator.handle_turn("hello again friend", "s1")

    assert response.error == "connect a wallet"
    assert parts["generator"].calls == []
    assert parts["rewards"].first_chat_calls == 0


@pytest.mark.anyio
async def test_generation_timeout_becomes_error():
    async def slow():
        await asyncio.sleep(5)
        yield "late"

    generator = StubGenerator(lambda call: TokenStream(tokens=slow()))
    orchestrator, parts = build(generator=generator, generation_timeout_sec=0.05)

    response = await orchestrator.handle_turn("take your time with this", "s1")

    assert response.error is not None
    assert "exceeded" in response.error
    assert len(generator.calls) == 1
    assert parts["rewards"].inference_calls == 0


@pytest.mark.anyio
async def test_empty_answer_is_a_failure():
    generator = StubGenerator(lambda call: TokenStream(tokens=_tokens("", "  ")))
    orchestrator, parts = build(generator=generator)

    response = await orchestrator.handle_turn("say nothing please", "s1")

    assert response.error == "The model returned an empty answer."
    assert parts["rewards"].inference_calls == 0


@pytest.mark.anyio
async def test_previews_are_capped_and_truncated():
    long_text = "x" * 150
    cache = MemoryCache()
    for key in ("m1", "m2", "m3", "m4"):
        cache.put(key, long_text if key == "m1" else f"memory {key}")
    orchestrator, parts = build(
        search=StubSearch(_hits(("m1", 0.9), ("m2", 0.8), ("m3", 0.7), ("m4", 0.6))),
        cache=cache,
    )

    response = await orchestrator.handle_turn("summarize my notes", "s1")

    assert len(response.retrieved_memories) == 3
    assert response.retrieved_memories[0] == "x" * 100 + "..."
    assert response.retrieved_memories[1] == "memory m2"
    await parts["background"].drain()


@pytest.mark.anyio
async def test_background_analysis_awards_bonus_above_threshold():
    resonance = StubResonance(score=80)
    orchestrator, parts = build(resonance=resonance)

    response = await orchestrator.handle_turn("I realized today how much I value quiet mornings", "s1")
    await parts["background"].drain()

    assert response.rewarded_amount == 10
    assert resonance.messages == ["I realized today how much I value quiet mornings"]
    assert parts["rewards"].bonus_scores == [80]
    assert parts["persona"].messages == ["I realized today how much I value quiet mornings"]


@pytest.mark.anyio
async def test_background_analysis_skips_bonus_below_threshold():
    orchestrator, parts = build(resonance=StubResonance(score=69))

    await orchestrator.handle_turn("just checking in on things", "s1")
    await parts["background"].drain()

    assert parts["rewards"].bonus_scores == []


@pytest.mark.anyio
async def test_cancellation_propagates():
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(10)
        yield "never"

    generator = StubGenerator(lambda call: TokenStream(tokens=hang()))
    orchestrator, _ = build(generator=generator)

    task = asyncio.ensure_future(orchestrator.handle_turn("wait for it", "s1"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.anyio
async def test_decrypted_memories_stay_cached_when_turn_is_cancelled():
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(10)
        yield "never"

    cache = MemoryCache()
    search = StubSearch(_hits(("m1", 0.9), ("m2", 0.8)))
    decryptor = StubDecryptor({"m1": "plain one", "m2": "plain two"})
    generator = StubGenerator(lambda call: TokenStream(tokens=hang()))
    orchestrator, _ = build(
        search=search, decryptor=decryptor, generator=generator, cache=cache
    )

    task = asyncio.ensure_future(orchestrator.handle_turn("what did I write last week", "s1"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(decryptor.calls) == 1
    assert cache.get("m1") == "plain one"
    assert cache.get("m2") == "plain two"
