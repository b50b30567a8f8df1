from __future__ import annotations

from datetime import datetime, timezone

from memochat.memory.types import ConversationTurn, MemoryContext
from memochat.persona.profile import TRAITS, PersonaProfile, TraitEstimate, merge_estimate
from memochat.services.prompt_builder import (
    DEFAULT_SYSTEM_PROMPT,
    MEMORY_CONTEXT_PREFIX,
    QUALITY_GUIDELINES,
    PromptBuilder,
)

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _turn(text: str, is_user: bool, is_error: bool = False) -> ConversationTurn:
    return ConversationTurn(id=text, text=text, is_user=is_user, timestamp=NOW, is_error=is_error)


def test_history_window_drops_errors_and_current_message() -> None:
    builder = PromptBuilder(max_history=3)
    turns = [
        _turn("oldest", True),
        _turn("reply one", False),
        _turn("Sorry, something failed", False, is_error=True),
        _turn("second question", True),
        _turn("current question", True),
    ]

    history = builder.build_history(turns, "current question")

    assert history == [{"role": "user", "content": "second question"}]


def test_search_query_joins_previous_user_turn() -> None:
    builder = PromptBuilder()
    turns = [_turn("I planted tomatoes", True), _turn("Nice!", False)]

    assert builder.build_search_query(turns, "how are they doing") == (
        "I planted tomatoes\nhow are they doing"
    )
    assert builder.build_search_query([], "how are they doing") == "how are they doing"
    assert builder.build_search_query([_turn("same", True)], "same") == "same"


def test_memory_context_respects_snippet_and_budget() -> None:
    builder = PromptBuilder(memory_snippet_chars=10, memory_budget_chars=25)
    memories = [
        MemoryContext(memory_id="a", content="abcdefghijKLMNOP", score=0.91),
        MemoryContext(memory_id="b", content="second one", score=0.8),
        MemoryContext(memory_id="c", content="third item", score=0.7),
    ]

    context = builder.build_memory_context(memories)

    assert context.startswith(MEMORY_CONTEXT_PREFIX)
    assert "Memory 1 (similarity 91%):\nabcdefghij" in context
    assert "KLMNOP" not in context
    assert "Memory 2 (similarity 80%):\nsecond one" in context
    assert "third item" not in context


def test_memory_context_empty_when_nothing_fits() -> None:
    builder = PromptBuilder(memory_snippet_chars=50, memory_budget_chars=5)

    assert builder.build_memory_context([MemoryContext("a", "too long to fit", 0.9)]) == ""
    assert builder.build_memory_context([]) == ""


def test_messages_use_default_prompt_without_persona() -> None:
    builder = PromptBuilder()
    history = [{"role": "assistant", "content": "hi"}]

    messages = builder.build_messages("what now", history, persona=PersonaProfile(user_id="u"))

    assert messages[0] == {
        "role": "system",
        "content": DEFAULT_SYSTEM_PROMPT + "\n\n" + QUALITY_GUIDELINES,
    }
    assert messages[1:] == [
        {"role": "assistant", "content": "hi"},
        {"role": "user", "content": "what now"},
    ]


def test_messages_include_persona_and_context() -> None:
    builder = PromptBuilder()
    estimate = TraitEstimate.from_mapping(
        {trait: (0.95 if trait == "openness" else 0.5) for trait in TRAITS}
    )
    persona = merge_estimate(PersonaProfile(user_id="u"), estimate, NOW)

    messages = builder.build_messages("tell me", [], persona=persona, extra_context="CONTEXT")

    system_prompt = messages[0]["content"]
    assert "User Dominant Trait**: Openness" in system_prompt
    assert "Creative language" in system_prompt
    assert messages[1] == {"role": "system", "content": "CONTEXT"}
    assert messages[-1] == {"role": "user", "content": "tell me"}
