from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from memochat.db.models import PersonaProfileRow
from memochat.persona.profile import TRAITS, PersonaProfile, TraitDistribution
from memochat.utils.time_utils import ensure_utc, utc_now


class PersonaRepo:
    """Repository for per-user persona profiles."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_row(self, user_id: str) -> Optional[PersonaProfileRow]:
        result = await self._db.execute(
            select(PersonaProfileRow).where(PersonaProfileRow.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_profile(self, user_id: str) -> Optional[PersonaProfile]:
        """Fetch the profile as a domain object, or None if never created."""

        row = await self.get_row(user_id)
        return _to_profile(row) if row else None

    async def save_profile(self, profile: PersonaProfile) -> PersonaProfileRow:
        """Insert or update the persona row from a domain profile."""

        row = await self.get_row(profile.user_id)
        traits_json = json.dumps(
            {
                name: {"alpha": dist.alpha, "beta": dist.beta}
                for name, dist in profile.traits.items()
            }
        )
        evidence_json = json.dumps(list(profile.evidence), ensure_ascii=False)
        if row is None:
            row = PersonaProfileRow(user_id=profile.user_id)
            self._db.add(row)
        row.traits_json = traits_json
        row.evidence_json = evidence_json
        row.sample_count = profile.sample_count
        row.onboarding_summary = profile.onboarding_summary or None
        row.onboarding_reliability = profile.onboarding_reliability
        row.updated_at = profile.updated_at or utc_now()
        row.last_reinforced_at = profile.last_reinforced_at
        await self._db.flush()
        return row

    async def set_onboarding(
        self, user_id: str, *, summary: str, reliability: float = 0.5
    ) -> PersonaProfileRow:
        """Record the onboarding answers summary used by resonance scoring."""

        row = await self.get_row(user_id)
        if row is None:
            row = PersonaProfileRow(user_id=user_id, traits_json="{}", evidence_json="[]")
            self._db.add(row)
        row.onboarding_summary = summary.strip() or None
        row.onboarding_reliability = min(1.0, max(0.0, reliability))
        row.updated_at = utc_now()
        await self._db.flush()
        return row


def _to_profile(row: PersonaProfileRow) -> PersonaProfile:
    try:
        raw_traits = json.loads(row.traits_json or "{}")
    except ValueError:
        raw_traits = {}
    traits: dict[str, TraitDistribution] = {}
    for name in TRAITS:
        entry = raw_traits.get(name) if isinstance(raw_traits, dict) else None
        if isinstance(entry, dict):
            traits[name] = TraitDistribution(
                alpha=float(entry.get("alpha", 1.0)), beta=float(entry.get("beta", 1.0))
            )
        else:
            traits[name] = TraitDistribution()

    try:
        evidence = json.loads(row.evidence_json or "[]")
    except ValueError:
        evidence = []

    return PersonaProfile(
        user_id=row.user_id,
        traits=traits,
        sample_count=row.sample_count or 0,
        onboarding_summary=row.onboarding_summary or "",
        onboarding_reliability=row.onboarding_reliability,
        evidence=tuple(item for item in evidence if isinstance(item, dict)),
        updated_at=ensure_utc(row.updated_at) if row.updated_at else None,
        last_reinforced_at=ensure_utc(row.last_reinforced_at) if row.last_reinforced_at else None,
    )
