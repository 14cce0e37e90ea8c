"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the app can start with minimal configuration.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class CallStoreBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """
    Central configuration for the CareCall service.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed; use `.env.example` as the template.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT

    # ── Voice Platform (VAPI) ────────────────────────────────────
    vapi_api_key: str = Field(default="", description="VAPI API key")
    vapi_assistant_id: str = Field(default="", description="Assistant used for outbound calls")
    vapi_phone_number_id: str = Field(default="", description="Caller number registered in VAPI")
    vapi_base_url: str = Field(default="https://api.vapi.ai", description="VAPI REST base URL")
    vapi_webhook_secret: str = Field(default="", description="Shared secret sent as x-vapi-signature")
    voice_request_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout for VAPI calls")

    # ── Supabase ─────────────────────────────────────────────────
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")
    supabase_webhook_secret: str = Field(default="", description="Bearer token for internal trigger webhooks")
    users_table: str = Field(default="family_registrations", description="User registrations table")
    calls_table: str = Field(default="companion_calls", description="Per-call outcome table")
    insights_table: str = Field(default="call_insights", description="Per-call analysis table")
    call_events_table: str = Field(default="carrier_call_events", description="Carrier event log table")

    # ── Blob storage (Supabase Storage buckets) ──────────────────
    legal_bucket: str = Field(default="recordings-legal", description="Immutable long-retention bucket")
    active_bucket: str = Field(default="recordings-active", description="Working bucket for processing")

    # ── Similarity index (Weaviate) ──────────────────────────────
    weaviate_url: str = Field(default="", description="Weaviate base URL")
    weaviate_api_key: str = Field(default="", description="Weaviate API key")
    weaviate_class: str = Field(default="CompanionConversation", description="Weaviate class for conversations")

    # ── Redis ────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    call_store_backend: CallStoreBackend = Field(
        default=CallStoreBackend.MEMORY, description="Where scheduled calls are kept"
    )

    # ── Scheduling policy ────────────────────────────────────────
    first_call_delay_minutes: int = Field(default=120, ge=0, description="Delay between registration and first call")
    retry_backoff_minutes: int = Field(default=30, ge=1, description="Fixed delay before a retry")
    max_call_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per scheduled call")
    call_history_limit: int = Field(default=10, ge=1, le=100, description="Previous calls fed into the call context")
    follow_up_hour: int = Field(default=10, ge=0, le=23, description="Local hour for follow-up calls")
    local_timezone: str = Field(default="America/Mexico_City", description="Timezone of the called users")
    sweep_interval_seconds: float = Field(default=15.0, gt=0, description="Due-call sweep interval")

    # ── Feature Flags ────────────────────────────────────────────
    feature_carrier_retry: bool = Field(default=False, description="Act on carrier retry signals")
    feature_cancel_on_unsubscribe: bool = Field(default=False, description="Cancel pending calls on unsubscribe")
    feature_similarity_index: bool = Field(default=True, description="Send anonymized transcripts to Weaviate")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def similarity_index_enabled(self) -> bool:
        return self.feature_similarity_index and bool(self.weaviate_url)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
