from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from memochat.payments.x402 import PaymentChallenge, PaymentChallengeChannel, parse_requirement
from memochat.schemas.chat import PaymentChallengeOut, PaymentRequirementOut

router = APIRouter(prefix="/api/payment", tags=["payment"])


def get_payment_channel(request: Request) -> PaymentChallengeChannel:
    """Dependency to access the pending payment challenge slot."""

    return request.app.state.payment_channel


@router.get("/challenge", response_model=PaymentChallengeOut)
async def pending_challenge(
    channel: PaymentChallengeChannel = Depends(get_payment_channel),
) -> PaymentChallengeOut:
    """Show the pending x402 challenge without taking it out of the slot."""

    return _challenge_out(channel.peek())


@router.post("/challenge/consume", response_model=PaymentChallengeOut)
async def consume_challenge(
    channel: PaymentChallengeChannel = Depends(get_payment_channel),
) -> PaymentChallengeOut:
    """Hand the pending x402 challenge to the caller and empty the slot."""

    return _challenge_out(await channel.consume())


def _challenge_out(challenge: Optional[PaymentChallenge]) -> PaymentChallengeOut:
    if challenge is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No pending payment challenge"
        )
    requirement = parse_requirement(challenge)
    return PaymentChallengeOut(
        status_code=challenge.status_code,
        headers=challenge.headers,
        body_raw=challenge.body_raw,
        body_json=challenge.body_json,
        requirement=PaymentRequirementOut(
            chain_id=requirement.chain_id,
            asset_id=requirement.asset_id,
            amount_atomic=requirement.amount_atomic,
            recipient=requirement.recipient,
            expires_at=requirement.expires_at,
            nonce=requirement.nonce,
        ),
    )
