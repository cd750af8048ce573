"""Pydantic Settings: typed configuration with .env auto-loading."""

from __future__ import annotations

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.llm_config import LLMConfig


class Settings(BaseSettings):
    """Application configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    service_port: int = 5000
    cors_origins: list[str] = ["*"]
    debug: bool = False

    # ── LLM ──────────────────────────────────────────────────
    default_model: str = "openai/gpt-4.1"
    drill_model: str = "openai/gpt-4.1"  # Socratic chat, streamed
    plan_model: str = "openai/gpt-4.1-mini"  # Structured drill plan
    summary_model: str = "openai/gpt-4.1-mini"  # Structured session summary
    max_tokens: int = 4096

    # ── LLM Generation Defaults (all optional, None = model default) ──
    temperature: float | None = None
    top_p: float | None = None
    seed: int | None = None

    # Provider API keys
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    dashscope_api_key: str = ""
    gemini_api_key: str = ""

    # ── Drill Conversation ───────────────────────────────────
    drill_target_turns: int = 20  # Student turns the plan is paced against
    drill_max_steps: int = 2  # Model request rounds per invocation
    drill_single_flight: bool = True  # Serialize invocations per session (in-process)

    # ── Durable Workflows ────────────────────────────────────
    step_max_attempts: int = 3
    step_retry_interval_s: float = 2.0
    workflow_recovery_enabled: bool = True

    # ── Delta Streaming ──────────────────────────────────────
    delta_flush_interval_ms: int = 100
    channel_max_rate: int = 50  # messages/sec the broadcast channel sustains
    sse_heartbeat_interval_s: float = 30.0

    # ── Concurrency (per worker) ─────────────────────────────
    max_concurrent_llm: int = 10  # Outbound model calls
    max_concurrent_streams: int = 200  # Open SSE connections; extra get 503

    # ── Storage ──────────────────────────────────────────────
    store_type: str = "memory"  # "memory" or "redis"
    redis_url: str = ""  # e.g. redis://:password@host:6379/0

    # ── Auth (external identity provider) ────────────────────
    auth_verify_url: str = "http://localhost:8080/api/auth/me"
    auth_cache_ttl_s: int = 300

    # ── Stream Client ────────────────────────────────────────
    stream_max_retry_attempts: int = 10
    stream_initial_retry_delay_s: float = 1.0
    stream_max_retry_delay_s: float = 30.0

    @model_validator(mode="after")
    def _check_flush_cadence(self) -> Settings:
        # One delta per flush window must stay under the channel ceiling.
        min_interval_ms = 1000 / self.channel_max_rate
        if self.delta_flush_interval_ms < min_interval_ms:
            raise ValueError(
                f"delta_flush_interval_ms={self.delta_flush_interval_ms} exceeds the "
                f"channel rate ceiling ({self.channel_max_rate}/s needs >= {min_interval_ms:.0f}ms)"
            )
        return self

    # ── Helpers ───────────────────────────────────────────────

    def get_default_llm_config(self) -> LLMConfig:
        """Build an :class:`LLMConfig` from global .env defaults."""
        return LLMConfig(
            model=self.default_model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            seed=self.seed,
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton accessor for application settings."""
    return Settings()
