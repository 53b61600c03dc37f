from __future__ import annotations

from pydantic import AliasChoices, ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    api_key: str = "test-api-key"
    trusted_proxies: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "testclient"]
    )
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    database_url: str = Field("sqlite:////tmp/humsafer_test.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    redis_url: str = Field("redis://localhost:6379", alias="REDIS_URL")

    # Generation providers
    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    openai_model: str = Field("gpt-4o-mini", alias="OPENAI_MODEL")
    openai_vision_model: str = Field("gpt-4o-mini", alias="OPENAI_VISION_MODEL")
    xai_api_key: str | None = Field(None, alias="XAI_API_KEY")
    xai_base_url: str = Field("https://api.x.ai/v1", alias="XAI_BASE_URL")
    xai_model: str = Field("grok-2-1212", alias="XAI_MODEL")
    google_ai_api_key: str | None = Field(
        None,
        validation_alias=AliasChoices("GOOGLE_AI_API_KEY", "GOOGLE_AP_API_KEY"),
    )
    gemini_model: str = Field("gemini-1.5-flash", alias="GEMINI_MODEL")
    gemini_fallback_model: str | None = Field("gemini-pro", alias="GEMINI_FALLBACK_MODEL")
    gemini_base_url: str = Field(
        "https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_BASE_URL",
    )
    mock_ai: bool = Field(False, alias="MOCK_AI")

    provider_timeout_seconds: float = Field(25.0, alias="PROVIDER_TIMEOUT_SECONDS")
    fast_timeout_seconds: float = Field(6.0, alias="FAST_TIMEOUT_SECONDS")
    fast_history_turns: int = Field(2, alias="FAST_HISTORY_TURNS")
    legacy_history_turns: int = Field(20, alias="LEGACY_HISTORY_TURNS")

    # Free tier rule
    free_trial_days: int = Field(7, alias="FREE_TRIAL_DAYS")
    free_total_messages: int = Field(50, alias="FREE_TOTAL_MESSAGES")
    free_daily_messages: int = Field(15, alias="FREE_DAILY_MESSAGES")
    free_cooldown_seconds: int = Field(3, alias="FREE_COOLDOWN_SECONDS")
    free_rate_limit_per_minute: int = Field(10, alias="FREE_RATE_LIMIT_PER_MINUTE")

    # Paid tiers: -1 means no daily cap
    tier1_daily_cap: int = Field(-1, alias="TIER1_DAILY_CAP")
    tier2_daily_cap: int = Field(-1, alias="TIER2_DAILY_CAP")
    tier3_daily_cap: int = Field(-1, alias="TIER3_DAILY_CAP")

    quota_timezone: str = Field("Asia/Kolkata", alias="QUOTA_TIMEZONE")
    charge_restricted_refusal: bool = Field(False, alias="CHARGE_RESTRICTED_REFUSAL")

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )
