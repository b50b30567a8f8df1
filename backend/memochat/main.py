from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from memochat.api import chat as chat_api
from memochat.api import memory as memory_api
from memochat.api import payment as payment_api
from memochat.api import persona as persona_api
from memochat.api import rewards as rewards_api
from memochat.core.config import Settings, get_settings
from memochat.core.logging import setup_logging
from memochat.db.base import create_engine, create_sessionmaker, init_db
from memochat.memory.cache import MemoryCache
from memochat.memory.decryption import AuthorizationGuard, StaticAuthorizer, VaultDecryptor
from memochat.memory.embedder import create_embedder
from memochat.memory.search import SemanticSearchEngine
from memochat.memory.store import MemoryStore
from memochat.memory.vector_store import SQLiteVectorStore
from memochat.payments.x402 import PaymentChallengeChannel
from memochat.providers.base import LLMAdapter, MockAdapter
from memochat.providers.openai_adapter import OpenAIAdapter
from memochat.repos.chat_repo import ChatHistoryStore
from memochat.services.background import BackgroundTaskManager
from memochat.services.chat_orchestrator import ChatOrchestrator, OrchestratorConfig
from memochat.services.generation_service import ChatGenerationService
from memochat.services.persona_service import OnboardingRecorder, PersonaReinforcer
from memochat.services.prompt_builder import PromptBuilder
from memochat.services.rate_limiter import ChatRateLimiter
from memochat.services.resonance import ResonanceScorer
from memochat.services.reward_service import LedgerRewardService
from memochat.services.session_service import (
    BackendSessionManager,
    Ed25519ChallengeSigner,
    NullSessionManager,
)
from memochat.utils.crypto import MemoryCipher

logger = logging.getLogger(__name__)

DEV_SECRET_KEY = "memochat-dev-secret"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        yield
        await app.state.background.shutdown()
        await engine.dispose()

    session = _create_session_manager(settings)
    adapter = _create_adapter(settings, session)
    cipher = MemoryCipher(_resolve_secret(settings), user_id=settings.user_id)
    prompt_builder = PromptBuilder(
        max_history=settings.chat_history_window,
        query_user_turns=settings.chat_query_user_turns,
        memory_snippet_chars=settings.chat_memory_snippet_chars,
        memory_budget_chars=settings.chat_memory_budget_chars,
    )
    search_engine = SemanticSearchEngine(
        sessionmaker=sessionmaker,
        embedder=create_embedder(settings),
        vector_store=SQLiteVectorStore(),
        user_id=settings.user_id,
    )

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.background = BackgroundTaskManager()
    app.state.memory_cache = MemoryCache()
    app.state.payment_channel = PaymentChallengeChannel()
    app.state.chat_history = ChatHistoryStore(sessionmaker)
    app.state.chat_rate_limiter = ChatRateLimiter(
        max_message_chars=settings.chat_max_message_chars,
        per_minute=settings.chat_rate_per_minute,
        per_hour=settings.chat_rate_per_hour,
        min_interval_sec=settings.chat_rate_min_interval_sec,
        cooldown_sec=settings.chat_rate_cooldown_sec,
    )
    app.state.onboarding = OnboardingRecorder(sessionmaker=sessionmaker, user_id=settings.user_id)
    app.state.rewards = LedgerRewardService(
        sessionmaker=sessionmaker,
        user_id=settings.user_id,
        inference_amount=settings.reward_inference_amount,
        first_chat_amount=settings.reward_first_chat_amount,
        daily_full_reward_limit=settings.reward_daily_full_limit,
        over_limit_amount=settings.reward_over_limit_amount,
    )
    app.state.resonance = ResonanceScorer(
        adapter=adapter, sessionmaker=sessionmaker, user_id=settings.user_id
    )
    app.state.memory_store = MemoryStore(
        sessionmaker=sessionmaker,
        cipher=cipher,
        search_engine=search_engine,
        user_id=settings.user_id,
    )
    app.state.chat_orchestrator = ChatOrchestrator(
        search=search_engine,
        decryptor=VaultDecryptor(
            sessionmaker=sessionmaker,
            cipher=cipher,
            authorizer=StaticAuthorizer(settings.decrypt_auto_approve),
        ),
        cache=app.state.memory_cache,
        generator=ChatGenerationService(
            adapter=adapter,
            prompt_builder=prompt_builder,
            sessionmaker=sessionmaker,
            user_id=settings.user_id,
        ),
        rewards=app.state.rewards,
        session=session,
        payment_channel=app.state.payment_channel,
        history=app.state.chat_history,
        prompt_builder=prompt_builder,
        resonance=app.state.resonance,
        persona=PersonaReinforcer(
            adapter=adapter,
            sessionmaker=sessionmaker,
            user_id=settings.user_id,
            min_message_chars=settings.persona_min_message_chars,
            interval_hours=settings.persona_reinforce_interval_hours,
        ),
        background=app.state.background,
        guard=AuthorizationGuard(
            failure_limit=settings.decrypt_failure_limit,
            cooldown_sec=settings.decrypt_cooldown_sec,
        ),
        config=OrchestratorConfig(
            search_top_k=settings.chat_search_top_k,
            search_threshold=settings.chat_search_threshold,
            history_window=settings.chat_history_window,
            generation_timeout_sec=settings.chat_generation_timeout_sec,
            preview_count=settings.chat_preview_count,
            preview_chars=settings.chat_preview_chars,
            no_memory_marker=settings.chat_no_memory_marker,
            use_persona=settings.chat_use_persona,
            resonance_bonus_threshold=settings.resonance_bonus_threshold,
        ),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_api.router)
    app.include_router(memory_api.router)
    app.include_router(payment_api.router)
    app.include_router(persona_api.router)
    app.include_router(rewards_api.router)

    return app


def _create_session_manager(
    settings: Settings,
) -> Union[BackendSessionManager, NullSessionManager]:
    wallet_address = settings.wallet_address.strip()
    if not wallet_address:
        return NullSessionManager()
    seed = settings.wallet_signing_seed.strip()
    signer = Ed25519ChallengeSigner.from_seed_hex(seed) if seed else None
    if signer is None:
        logger.warning("WALLET_ADDRESS is set without WALLET_SIGNING_SEED; login will fail")
    return BackendSessionManager(
        base_url=settings.backend_base_url,
        wallet_address=wallet_address,
        signer=signer,
        default_ttl_sec=settings.session_ttl_sec,
    )


def _create_adapter(
    settings: Settings, session: Union[BackendSessionManager, NullSessionManager]
) -> LLMAdapter:
    if settings.llm_api_key.strip():
        return OpenAIAdapter(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key.strip(),
            model_name=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
        )
    if isinstance(session, BackendSessionManager):
        return OpenAIAdapter(
            base_url=settings.backend_base_url,
            api_key="",
            model_name=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
            token_provider=session,
        )
    logger.warning("No LLM_API_KEY or wallet configured; answering in offline mode")
    return MockAdapter()


def _resolve_secret(settings: Settings) -> str:
    secret = settings.app_secret_key.strip()
    if secret:
        return secret
    if settings.app_env != "dev":
        raise RuntimeError("APP_SECRET_KEY must be set outside the dev environment.")
    logger.warning("APP_SECRET_KEY is not set; using the development key")
    return DEV_SECRET_KEY


app = create_app()
