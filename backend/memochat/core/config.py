from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    db_url: str = Field(default="sqlite+aiosqlite:///./memochat.db", alias="DB_URL")
    app_secret_key: str = Field(default="", alias="APP_SECRET_KEY")
    user_id: str = Field(default="default_user", alias="USER_ID")
    cors_origins: str = Field(
        default="http://127.0.0.1:5500,http://localhost:5500",
        alias="CORS_ORIGINS",
    )

    backend_base_url: str = Field(default="https://api.soulon.app", alias="BACKEND_BASE_URL")
    wallet_address: str = Field(default="", alias="WALLET_ADDRESS")
    session_ttl_sec: int = Field(default=7 * 24 * 3600, alias="SESSION_TTL_SEC")

    llm_base_url: str = Field(default="https://api.openai.com", alias="LLM_BASE_URL")
    llm_api_key: str = Field(default="", alias="LLM_API_KEY")
    llm_model: str = Field(default="qwen-plus", alias="LLM_MODEL")
    llm_max_tokens: int = Field(default=700, alias="LLM_MAX_TOKENS")

    embed_provider: str = Field(default="deterministic", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="deterministic-v1", alias="EMBED_MODEL")
    embed_dim: int = Field(default=64, alias="EMBED_DIM")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")

    chat_search_top_k: int = Field(default=5, alias="CHAT_SEARCH_TOP_K")
    chat_search_threshold: float = Field(default=0.5, alias="CHAT_SEARCH_THRESHOLD")
    chat_history_window: int = Field(default=12, alias="CHAT_HISTORY_WINDOW")
    chat_query_user_turns: int = Field(default=2, alias="CHAT_QUERY_USER_TURNS")
    chat_memory_snippet_chars: int = Field(default=400, alias="CHAT_MEMORY_SNIPPET_CHARS")
    chat_memory_budget_chars: int = Field(default=1800, alias="CHAT_MEMORY_BUDGET_CHARS")
    chat_preview_count: int = Field(default=3, alias="CHAT_PREVIEW_COUNT")
    chat_preview_chars: int = Field(default=100, alias="CHAT_PREVIEW_CHARS")
    chat_generation_timeout_sec: float = Field(default=60.0, alias="CHAT_GENERATION_TIMEOUT_SEC")
    chat_no_memory_marker: str = Field(default="[NO_MEMORY]", alias="CHAT_NO_MEMORY_MARKER")
    chat_use_persona: bool = Field(default=True, alias="CHAT_USE_PERSONA")
    chat_max_message_chars: int = Field(default=2000, alias="CHAT_MAX_MESSAGE_CHARS")
    chat_rate_per_minute: int = Field(default=10, alias="CHAT_RATE_PER_MINUTE")
    chat_rate_per_hour: int = Field(default=60, alias="CHAT_RATE_PER_HOUR")
    chat_rate_min_interval_sec: float = Field(default=1.0, alias="CHAT_RATE_MIN_INTERVAL_SEC")
    chat_rate_cooldown_sec: float = Field(default=30.0, alias="CHAT_RATE_COOLDOWN_SEC")

    decrypt_failure_limit: int = Field(default=3, alias="DECRYPT_FAILURE_LIMIT")
    decrypt_cooldown_sec: float = Field(default=60.0, alias="DECRYPT_COOLDOWN_SEC")
    decrypt_auto_approve: bool = Field(default=True, alias="DECRYPT_AUTO_APPROVE")
    wallet_signing_seed: str = Field(default="", alias="WALLET_SIGNING_SEED")

    persona_reinforce_interval_hours: float = Field(
        default=6.0, alias="PERSONA_REINFORCE_INTERVAL_HOURS"
    )
    persona_min_message_chars: int = Field(default=60, alias="PERSONA_MIN_MESSAGE_CHARS")

    reward_inference_amount: int = Field(default=10, alias="REWARD_INFERENCE_AMOUNT")
    reward_first_chat_amount: int = Field(default=30, alias="REWARD_FIRST_CHAT_AMOUNT")
    reward_daily_full_limit: int = Field(default=50, alias="REWARD_DAILY_FULL_LIMIT")
    reward_over_limit_amount: int = Field(default=1, alias="REWARD_OVER_LIMIT_AMOUNT")
    resonance_bonus_threshold: int = Field(default=70, alias="RESONANCE_BONUS_THRESHOLD")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from a comma-delimited or JSON list string."""

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                value: Any = json.loads(raw)
            except ValueError:
                value = None
            if isinstance(value, list):
                items = [str(item).strip() for item in value]
                return [item for item in items if item]
        return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
