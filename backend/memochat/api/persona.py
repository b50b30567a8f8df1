from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from memochat.schemas.persona import OnboardingRequest, OnboardingResponse
from memochat.services.persona_service import OnboardingAnswer, OnboardingRecorder

router = APIRouter(prefix="/api/persona", tags=["persona"])


def get_onboarding_recorder(request: Request) -> OnboardingRecorder:
    return request.app.state.onboarding


@router.post("/onboarding", response_model=OnboardingResponse)
async def record_onboarding(
    payload: OnboardingRequest,
    recorder: OnboardingRecorder = Depends(get_onboarding_recorder),
) -> OnboardingResponse:
    """Store onboarding answers; later messages are scored for resonance against them."""

    answers = [
        OnboardingAnswer(
            question=item.question,
            answer=item.answer,
            sincerity=item.sincerity,
            confidence=item.confidence,
        )
        for item in payload.answers
    ]
    try:
        reliability = await recorder.record(answers)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    answered = sum(1 for answer in answers if answer.answer.strip())
    return OnboardingResponse(answered=answered, reliability=round(reliability, 4))
