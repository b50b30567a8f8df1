from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.persona.profile import PersonaProfile
from memochat.providers.base import GenerationOutcome, LLMAdapter
from memochat.repos.persona_repo import PersonaRepo
from memochat.services.prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)


class GenerationCollaborator(Protocol):
    async def generate(
        self,
        query: str,
        history: Sequence[dict],
        persona: bool,
        extra_context: Optional[str] = None,
    ) -> GenerationOutcome:
        """Start generation; returns a token stream or a payment challenge."""


class ChatGenerationService:
    """Builds the prompt for a turn and starts the provider stream."""

    def __init__(
        self,
        *,
        adapter: LLMAdapter,
        prompt_builder: PromptBuilder,
        sessionmaker: async_sessionmaker[AsyncSession],
        user_id: str,
    ) -> None:
        self._adapter = adapter
        self._prompt_builder = prompt_builder
        self._sessionmaker = sessionmaker
        self._user_id = user_id

    async def generate(
        self,
        query: str,
        history: Sequence[dict],
        persona: bool,
        extra_context: Optional[str] = None,
    ) -> GenerationOutcome:
        profile = await self._load_persona() if persona else None
        messages = self._prompt_builder.build_messages(
            query, history, persona=profile, extra_context=extra_context
        )
        return await self._adapter.stream_chat(messages)

    async def _load_persona(self) -> Optional[PersonaProfile]:
        try:
            async with self._sessionmaker() as db:
                return await PersonaRepo(db).get_profile(self._user_id)
        except Exception:  # noqa: BLE001
            logger.exception("Persona lookup failed; using default system prompt")
            return None
