from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

TRAITS = ("openness", "conscientiousness", "extraversion", "agreeableness", "neuroticism")

_MAX_EVIDENCE = 30


@dataclass(frozen=True)
class TraitDistribution:
    """Beta(alpha, beta) belief over one trait in [0, 1]."""

    alpha: float = 1.0
    beta: float = 1.0

    @property
    def mean(self) -> float:
        total = self.alpha + self.beta
        return self.alpha / total if total > 0 else 0.5

    def update_from_point(self, score: float, weight: float) -> "TraitDistribution":
        s = clamp_unit(score)
        w = max(0.1, weight)
        return TraitDistribution(
            alpha=max(0.0001, self.alpha + s * w),
            beta=max(0.0001, self.beta + (1.0 - s) * w),
        )


@dataclass(frozen=True)
class TraitEstimate:
    """Point estimate of the five traits from one classifier call."""

    openness: float
    conscientiousness: float
    extraversion: float
    agreeableness: float
    neuroticism: float
    sample_size: int = 1

    @classmethod
    def from_mapping(cls, payload: dict[str, Any], sample_size: int = 1) -> "TraitEstimate":
        values: dict[str, float] = {}
        for trait in TRAITS:
            raw = payload.get(trait)
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raise ValueError(f"Trait {trait} is missing or not numeric")
            values[trait] = clamp_unit(float(raw))
        return cls(sample_size=sample_size, **values)


@dataclass(frozen=True)
class PersonaProfile:
    """Running persona belief for one user."""

    user_id: str
    traits: dict[str, TraitDistribution] = field(
        default_factory=lambda: {trait: TraitDistribution() for trait in TRAITS}
    )
    sample_count: int = 0
    onboarding_summary: str = ""
    onboarding_reliability: float = 0.5
    evidence: tuple[dict[str, Any], ...] = ()
    updated_at: Optional[datetime] = None
    last_reinforced_at: Optional[datetime] = None

    def trait_mean(self, trait: str) -> float:
        return self.traits.get(trait, TraitDistribution()).mean

    def means(self) -> dict[str, float]:
        return {trait: self.trait_mean(trait) for trait in TRAITS}

    def dominant_trait(self) -> tuple[str, float]:
        means = self.means()
        trait = max(TRAITS, key=lambda name: means[name])
        return trait, means[trait]

    @property
    def has_observations(self) -> bool:
        return self.sample_count > 0


def merge_estimate(
    profile: PersonaProfile, estimate: TraitEstimate, timestamp: datetime
) -> PersonaProfile:
    """Fold a point estimate into the profile's Beta distributions."""

    weight = estimate_weight(estimate.sample_size)
    traits = {
        trait: profile.traits.get(trait, TraitDistribution()).update_from_point(
            getattr(estimate, trait), weight
        )
        for trait in TRAITS
    }
    new_evidence = tuple(
        {
            "trait": trait,
            "direction": _direction(getattr(estimate, trait)),
            "weight": weight,
            "timestamp": timestamp.isoformat(),
        }
        for trait in TRAITS
    )
    evidence = sorted(
        profile.evidence + new_evidence, key=lambda item: item["timestamp"], reverse=True
    )[:_MAX_EVIDENCE]
    return replace(
        profile,
        traits=traits,
        sample_count=max(profile.sample_count + estimate.sample_size, estimate.sample_size),
        evidence=tuple(evidence),
        updated_at=timestamp,
    )


def estimate_weight(sample_size: int) -> float:
    if sample_size >= 20:
        return 8.0
    if sample_size >= 10:
        return 5.0
    if sample_size >= 5:
        return 3.0
    return 1.5


def clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def _direction(score: float) -> str:
    if score >= 0.6:
        return "increase"
    if score <= 0.4:
        return "decrease"
    return "neutral"
