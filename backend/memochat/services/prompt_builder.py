from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from memochat.memory.types import ConversationTurn, MemoryContext
from memochat.persona.profile import TRAITS, PersonaProfile

DEFAULT_SYSTEM_PROMPT = (
    "You are the user's personal AI assistant, helping them manage and review their "
    "personal memories.\n\n"
    "Important Notes:\n"
    '- The "memories" provided by the user are content they recorded previously, not '
    "your memories.\n"
    "- Your role is to help the user understand, review, and analyze their own memories.\n"
    '- When referencing user memories, use phrases like "You previously recorded..." or '
    '"According to your memory..."\n\n'
    "Please follow these principles:\n"
    "1. Answer questions accurately based on the user's memory content.\n"
    "2. If there is no relevant information in the user's memories, honestly inform the user.\n"
    '3. Distinguish between "user\'s memory content" and "your suggestions/analysis".\n'
    "4. Maintain a friendly, caring, and professional tone.\n"
    "5. ALWAYS reply in the same language as the user's input."
)

QUALITY_GUIDELINES = (
    "Response Requirements:\n"
    "1) If providing actionable advice, prefer step-by-step lists (1, 2, 3...).\n"
    "2) If providing descriptive answers, use natural paragraphs.\n"
    "3) If information is insufficient, ask 1-3 clarifying questions first.\n"
    "4) Avoid vague generalizations.\n"
    "5) Answer directly, DO NOT output your thought process or paraphrase the question."
)

MEMORY_CONTEXT_PREFIX = (
    "The following are historical records the user wrote earlier. They are the user's "
    "memories, not yours. Use them only as reference. If they are not enough to answer "
    "the question, say so explicitly instead of guessing."
)

_TRAIT_DESCRIPTIONS = {
    "openness": (
        "Imaginative, loves exploring new ideas",
        "Balanced between tradition and innovation",
        "Pragmatic, prefers routine and experience",
    ),
    "conscientiousness": (
        "Organized, goal-oriented, highly disciplined",
        "Balanced between planning and flexibility",
        "Spontaneous, adaptable",
    ),
    "extraversion": (
        "Enthusiastic, loves social interaction",
        "Balanced between social and solitude",
        "Reserved, values alone time",
    ),
    "agreeableness": (
        "Friendly, empathetic",
        "Balanced between cooperation and independence",
        "Direct, values personal judgment",
    ),
    "neuroticism": (
        "Emotionally rich, sensitive to details",
        "Relatively stable emotions",
        "Calm, emotionally stable",
    ),
}

# (high >= 0.6, low <= 0.4)
_STYLE_GUIDANCE = {
    "openness": (
        "Creative language, uses metaphors and imagination",
        "Pragmatic and direct language, based on facts",
    ),
    "conscientiousness": (
        "Organized answers, attention to detail and accuracy",
        "Natural and casual answers, not formal",
    ),
    "extraversion": (
        "Enthusiastic tone, expressive vocabulary",
        "Calm and reserved tone, thoughtful expression",
    ),
    "agreeableness": (
        "Gentle and friendly words, considers others' feelings",
        "Direct and frank expression, values objective judgment",
    ),
    "neuroticism": (
        "May express some worries or subtle emotions",
        "Maintain a calm and optimistic tone",
    ),
}


class PromptBuilder:
    """Compose chat prompts, history windows and memory context blocks."""

    def __init__(
        self,
        max_history: int = 12,
        query_user_turns: int = 2,
        memory_snippet_chars: int = 400,
        memory_budget_chars: int = 1800,
    ) -> None:
        self._max_history = max(0, max_history)
        self._query_user_turns = max(1, query_user_turns)
        self._memory_snippet_chars = max(1, memory_snippet_chars)
        self._memory_budget_chars = max(1, memory_budget_chars)

    def build_history(
        self, turns: Sequence[ConversationTurn], current_message: str
    ) -> List[dict]:
        """Role/content history from the recent window, without error turns.

        A trailing user turn equal to the current message is dropped since
        the current message is appended separately.
        """

        window = [turn for turn in list(turns)[-self._max_history :] if not turn.is_error]
        if window and window[-1].is_user and window[-1].text.strip() == current_message.strip():
            window = window[:-1]
        return [
            {"role": "user" if turn.is_user else "assistant", "content": turn.text}
            for turn in window
            if turn.text.strip()
        ]

    def build_search_query(
        self, turns: Sequence[ConversationTurn], current_message: str
    ) -> str:
        current = current_message.strip()
        user_turns = [turn for turn in turns if turn.is_user and not turn.is_error]
        previous = [
            turn.text.strip()
            for turn in user_turns[-self._query_user_turns :]
            if turn.text.strip() and turn.text.strip() != current
        ]
        if not previous:
            return current
        return f"{previous[-1]}\n{current}"

    def build_memory_context(self, memories: Iterable[MemoryContext]) -> str:
        """Pack ranked memories under the character budget, dropping the tail."""

        lines: list[str] = []
        total_chars = 0
        for index, memory in enumerate(memories, start=1):
            text = memory.content.strip()[: self._memory_snippet_chars]
            if not text:
                continue
            if total_chars + len(text) > self._memory_budget_chars:
                break
            lines.append(f"Memory {index} (similarity {int(memory.score * 100)}%):\n{text}")
            total_chars += len(text)
        if not lines:
            return ""
        return MEMORY_CONTEXT_PREFIX + "\n\n" + "\n\n".join(lines)

    def build_messages(
        self,
        query: str,
        history: Sequence[dict],
        persona: Optional[PersonaProfile] = None,
        extra_context: Optional[str] = None,
    ) -> List[dict]:
        """Create the message list for the chat provider."""

        if persona is not None and persona.has_observations:
            system_prompt = self.persona_system_prompt(persona)
        else:
            system_prompt = DEFAULT_SYSTEM_PROMPT

        messages = [{"role": "system", "content": system_prompt + "\n\n" + QUALITY_GUIDELINES}]
        if extra_context and extra_context.strip():
            messages.append({"role": "system", "content": extra_context})
        messages.extend(history)
        messages.append({"role": "user", "content": query})
        return messages

    @staticmethod
    def persona_system_prompt(persona: PersonaProfile) -> str:
        means = persona.means()
        dominant, dominant_score = persona.dominant_trait()
        trait_lines = "\n".join(
            f"- {name.capitalize()}: {int(means[name] * 100)}% - {_trait_description(name, means[name])}"
            for name in TRAITS
        )
        return (
            "You are the user's dedicated AI assistant, understanding their personality traits "
            "and communicating in the most suitable way.\n\n"
            "**Your Identity**:\n"
            "- You are an AI assistant, not the user\n"
            "- You help the user manage and review their personal memories\n"
            "- When user provides memory content, it is what they recorded previously, "
            "not your memory\n\n"
            "**User Personality Traits** (for adjusting communication style):\n"
            f"{trait_lines}\n\n"
            f"**User Dominant Trait**: {dominant.capitalize()} ({int(dominant_score * 100)}%)\n\n"
            "**Communication Style Guidelines**:\n"
            f"{_style_guidance(means)}\n\n"
            "Please communicate in a way that suits this user. Remember: you are helping the "
            "user, not role-playing as the user.\n"
            "IMPORTANT: ALWAYS reply in the same language as the user's input."
        )


def _trait_description(trait: str, score: float) -> str:
    high, medium, low = _TRAIT_DESCRIPTIONS[trait]
    if score >= 0.7:
        return high
    if score >= 0.4:
        return medium
    return low


def _style_guidance(means: dict[str, float]) -> str:
    lines: list[str] = []
    for trait in TRAITS:
        high, low = _STYLE_GUIDANCE[trait]
        if means[trait] >= 0.6:
            lines.append(f"- {high}")
        elif means[trait] <= 0.4:
            lines.append(f"- {low}")
    return "\n".join(lines) if lines else "- Keep a balanced, natural tone"
