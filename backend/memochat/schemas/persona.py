from __future__ import annotations

from pydantic import Field

from memochat.schemas.common import APIModel


class OnboardingAnswerIn(APIModel):
    question: str = Field(min_length=1, max_length=500)
    answer: str = Field(max_length=2000)
    sincerity: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class OnboardingRequest(APIModel):
    """Answers collected by the onboarding questionnaire."""

    answers: list[OnboardingAnswerIn] = Field(min_length=1, max_length=50)


class OnboardingResponse(APIModel):
    answered: int
    reliability: float
