from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.core.security import sanitize_text
from memochat.persona.profile import PersonaProfile, TraitEstimate, clamp_unit, merge_estimate
from memochat.providers.base import LLMAdapter
from memochat.repos.persona_repo import PersonaRepo
from memochat.utils.json_utils import parse_json_object
from memochat.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

PERSONA_KEYWORDS = (
    "喜欢", "讨厌", "爱", "恨", "偏好", "最爱", "不喜欢",
    "prefer", "like", "love", "hate", "favorite",
    "我觉得", "我认为", "我的想法", "对我来说", "我通常", "我是那种", "我的性格", "我比较",
    "i think", "i feel", "i believe", "personally",
    "开心", "难过", "焦虑", "担心", "害怕", "兴奋",
    "happy", "sad", "anxious", "worried", "excited",
    "重要", "意义", "价值", "应该", "必须",
    "important", "meaningful", "should", "must",
    "习惯", "总是", "从不", "经常", "很少",
    "always", "never", "usually", "often", "rarely",
)

_TRAIT_PROMPT = (
    "You are a personality analyst. Estimate the Big Five (OCEAN) traits expressed by the "
    "user's message alone. Return JSON only, every value a number between 0 and 1: "
    '{"openness": 0.5, "conscientiousness": 0.5, "extraversion": 0.5, '
    '"agreeableness": 0.5, "neuroticism": 0.5}'
)


def quick_check(message: str) -> bool:
    """Keyword pre-check deciding whether a message says anything about the user."""

    lowered = message.casefold()
    return any(keyword in lowered for keyword in PERSONA_KEYWORDS)


class PersonaReinforcer:
    """Rate-limited enrichment of the persona profile from chat messages."""

    def __init__(
        self,
        *,
        adapter: LLMAdapter,
        sessionmaker: async_sessionmaker[AsyncSession],
        user_id: str,
        min_message_chars: int = 60,
        interval_hours: float = 6.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._adapter = adapter
        self._sessionmaker = sessionmaker
        self._user_id = user_id
        self._min_message_chars = min_message_chars
        self._interval = timedelta(hours=interval_hours)
        self._clock = clock or utc_now

    def is_candidate(self, message: str) -> bool:
        text = message.strip()
        return len(text) >= self._min_message_chars and quick_check(text)

    async def reinforce(self, message: str) -> bool:
        """Return True when the profile was updated. Never raises."""

        if not self.is_candidate(message):
            return False
        try:
            return await self._reinforce(message.strip())
        except Exception:  # noqa: BLE001
            logger.exception("Persona reinforcement failed")
            return False

    async def _reinforce(self, message: str) -> bool:
        now = self._clock()
        async with self._sessionmaker() as db:
            profile = await PersonaRepo(db).get_profile(self._user_id)
        if profile and profile.last_reinforced_at and now - profile.last_reinforced_at < self._interval:
            logger.debug("Persona reinforcement skipped: rate limited")
            return False

        estimate = await self._estimate(message)
        if estimate is None:
            return False

        base = profile or PersonaProfile(user_id=self._user_id)
        merged = replace(merge_estimate(base, estimate, now), last_reinforced_at=now)
        async with self._sessionmaker() as db:
            async with db.begin():
                await PersonaRepo(db).save_profile(merged)
        logger.info("Persona profile reinforced (samples=%s)", merged.sample_count)
        return True

    async def _estimate(self, message: str) -> Optional[TraitEstimate]:
        reply = await self._adapter.complete(
            [
                {"role": "system", "content": _TRAIT_PROMPT},
                {"role": "user", "content": sanitize_text(message, 2000)},
            ]
        )
        payload = parse_json_object(reply)
        if payload is None:
            logger.warning("Persona classifier returned no JSON object")
            return None
        try:
            return TraitEstimate.from_mapping(dict(payload))
        except ValueError as exc:
            logger.warning("Persona classifier reply rejected: %s", exc)
            return None


@dataclass(frozen=True)
class OnboardingAnswer:
    question: str
    answer: str
    sincerity: float = 0.5
    confidence: float = 0.5

    @property
    def reliability(self) -> float:
        return clamp_unit((self.sincerity + self.confidence) / 2)


def summarize_onboarding(answers: Sequence[OnboardingAnswer]) -> str:
    return "\n\n".join(
        f"Q: {answer.question.strip()}\nA: {answer.answer.strip()}" for answer in answers
    )


class OnboardingRecorder:
    """Stores the onboarding answers that resonance scoring compares messages against."""

    def __init__(self, *, sessionmaker: async_sessionmaker[AsyncSession], user_id: str) -> None:
        self._sessionmaker = sessionmaker
        self._user_id = user_id

    async def record(self, answers: Sequence[OnboardingAnswer]) -> float:
        """Persist the summary and return the overall reliability."""

        answered = [answer for answer in answers if answer.answer.strip()]
        if not answered:
            raise ValueError("At least one onboarding answer is required.")
        reliability = sum(answer.reliability for answer in answered) / len(answered)
        async with self._sessionmaker() as db:
            async with db.begin():
                await PersonaRepo(db).set_onboarding(
                    self._user_id,
                    summary=summarize_onboarding(answered),
                    reliability=reliability,
                )
        logger.info(
            "Onboarding recorded: %s answers, reliability %.2f", len(answered), reliability
        )
        return reliability
