from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.core.security import sanitize_text
from memochat.providers.base import LLMAdapter
from memochat.repos.persona_repo import PersonaRepo
from memochat.services.reward_service import resonance_grade
from memochat.utils.json_utils import parse_json_object

logger = logging.getLogger(__name__)

SCORE_NON_ALNUM = 25
SCORE_GREETING = 35
SCORE_TOO_SHORT = 30
SCORE_NO_ONBOARDING = 50

GREETINGS = frozenset(
    {
        "你好", "您好", "嗨", "哈喽", "哈啰", "早", "早上好", "中午好", "下午好", "晚上好",
        "晚安", "在吗", "在么", "好", "嗯", "行", "哦", "啊", "呢",
        "hi", "hello", "hey", "yo", "ok", "okay", "good morning", "good evening",
        "good night", "morning", "thanks", "thank you",
    }
)

DEEP_THOUGHT_KEYWORDS = (
    "觉得", "认为", "思考", "反思", "意识到", "感受", "理解", "发现", "意义", "价值",
    "成长", "改变", "体会", "领悟", "明白", "原来", "其实", "本质", "内心", "真正",
    "深刻", "重要", "影响", "决定",
    "i think", "i believe", "i realized", "i realised", "reflect", "meaning",
    "understand", "growth", "i feel", "actually", "important", "decided",
)

EMOTION_KEYWORDS = (
    "开心", "高兴", "难过", "伤心", "担心", "害怕", "期待", "兴奋", "感动", "温暖",
    "幸福", "感激", "爱", "喜欢", "讨厌", "生气", "焦虑", "平静", "满足", "遗憾",
    "希望", "失望", "惊喜", "安心",
    "happy", "sad", "worried", "afraid", "excited", "grateful", "love", "angry",
    "anxious", "hope", "disappointed", "calm",
)

_CLASSIFIER_PROMPT = (
    "You rate how strongly a chat message reflects the personality described in the "
    "user's onboarding answers. Consider language style consistency, emotional depth, "
    "topic relevance, self-reflection and expressed values. "
    'Return JSON only: {"score": <integer 0-100>}.'
)


@dataclass(frozen=True)
class ResonanceScore:
    score: int
    grade: str
    note: str


def length_ceiling(length: int) -> int:
    """Maximum score a message of this length may receive."""

    if length < 20:
        return 50
    if length < 50:
        return 69
    if length < 100:
        return 85
    return 100


def quick_score(message: str) -> Optional[int]:
    """Fixed low score for low-value inputs, or None when a model call is warranted."""

    text = message.strip()
    if all(not ch.isalnum() for ch in text):
        return SCORE_NON_ALNUM
    if _normalize_greeting(text) in GREETINGS:
        return SCORE_GREETING
    if len(text) < 10:
        return SCORE_TOO_SHORT
    return None


def rule_score(message: str, reliability: float) -> int:
    """Keyword and length estimate used when the classifier is unavailable."""

    text = message.strip()
    lowered = text.casefold()
    length = len(text)
    base = int(40 + min(1.0, max(0.0, reliability)) * 20)

    if length > 150:
        length_bonus = 15
    elif length > 80:
        length_bonus = 10
    elif length > 40:
        length_bonus = 5
    elif length < 10:
        length_bonus = -15
    else:
        length_bonus = 0

    depth_bonus = 0
    if any(keyword in lowered for keyword in DEEP_THOUGHT_KEYWORDS):
        depth_bonus = 25 if length > 100 else 15 if length > 50 else 10

    emotion_bonus = 0
    if any(keyword in lowered for keyword in EMOTION_KEYWORDS):
        emotion_bonus = 10 if length > 60 else 5

    penalty = 0
    if length < 5:
        penalty = -30
    elif _normalize_greeting(text) in GREETINGS:
        penalty = -20
    elif all(not ch.isalnum() for ch in text):
        penalty = -25

    return min(100, max(0, base + length_bonus + depth_bonus + emotion_bonus + penalty))


class ResonanceScorer:
    """Cheap-first persona resonance scoring for a user message."""

    def __init__(
        self,
        *,
        adapter: LLMAdapter,
        sessionmaker: async_sessionmaker[AsyncSession],
        user_id: str,
    ) -> None:
        self._adapter = adapter
        self._sessionmaker = sessionmaker
        self._user_id = user_id

    async def score(self, message: str) -> ResonanceScore:
        quick = quick_score(message)
        if quick is not None:
            return ResonanceScore(quick, resonance_grade(quick), "heuristic")

        summary, reliability = await self._onboarding()
        if not summary:
            raw, note = SCORE_NO_ONBOARDING, "no onboarding"
        else:
            classified = await self._classify(message, summary)
            if classified is None:
                raw, note = rule_score(message, reliability), "rules"
            else:
                raw, note = classified, "classifier"

        ceiling = length_ceiling(len(message.strip()))
        final = min(raw, ceiling)
        if final < raw:
            logger.debug("Resonance score %s clamped to length ceiling %s", raw, ceiling)
        return ResonanceScore(final, resonance_grade(final), note)

    async def _onboarding(self) -> tuple[str, float]:
        async with self._sessionmaker() as db:
            profile = await PersonaRepo(db).get_profile(self._user_id)
        if profile is None:
            return "", 0.5
        return profile.onboarding_summary, profile.onboarding_reliability

    async def _classify(self, message: str, summary: str) -> Optional[int]:
        messages = [
            {"role": "system", "content": _CLASSIFIER_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Onboarding answers summary:\n{sanitize_text(summary, 2000)}\n\n"
                    f"Message:\n{sanitize_text(message, 2000)}"
                ),
            },
        ]
        try:
            reply = await self._adapter.complete(messages)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Resonance classifier failed: %s", exc)
            return None

        payload = parse_json_object(reply)
        value = payload.get("score") if payload else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning("Resonance classifier returned no usable score")
            return None
        return min(100, max(0, int(round(value))))


def _normalize_greeting(text: str) -> str:
    return text.casefold().strip(" \t\n!！。.,，~～?？").strip()
