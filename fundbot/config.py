# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# All tunables for the request pipeline live here: Slack credentials, the
# LLM provider, the shared-state backend, and the limits enforced by each
# pipeline stage (rate window, daily budget, cache TTLs, thread memory).
#
# Pydantic Settings loads values in this priority order (highest first):
#   1. Environment variables (e.g., `SLACK_SIGNING_SECRET=...`)
#   2. Values from the .env file
#   3. Default values defined below
#
# USAGE:
#   from fundbot.config import settings
#   print(settings.rate_limit_max_requests)
# =============================================================================

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Defaults are the documented operating limits
    (20 requests / 5 minutes, $10/day per requester, 10-message threads).
    """

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_name: str = "FundBot Gateway"
    app_version: str = "0.1.0"
    bot_name: str = "FundBot"
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Slack
    # -------------------------------------------------------------------------
    # The signing secret authenticates inbound webhooks; the bot token is used
    # for replies, reactions and thread history recovery.
    #
    # listen_all_channels: channel IDs where the bot answers every message,
    # not only @-mentions. DMs are always answered.
    # -------------------------------------------------------------------------
    slack_bot_token: str = ""
    slack_signing_secret: str = ""
    slack_api_base_url: str = "https://slack.com/api"
    slack_timeout_seconds: float = 10.0
    slack_replay_window_seconds: int = 300
    listen_all_channels: list[str] = Field(default_factory=list)

    # -------------------------------------------------------------------------
    # LLM Configuration — Multi-Provider
    # -------------------------------------------------------------------------
    # "anthropic" uses the native Anthropic SDK; "openai_compatible" covers
    # any API that follows the OpenAI chat completions spec.
    #
    # SDK-level retries are disabled: the resilient invoker owns retry policy.
    # -------------------------------------------------------------------------
    llm_provider: str = "anthropic"  # "anthropic" or "openai_compatible"
    llm_base_url: str | None = None  # Only needed for openai_compatible
    llm_api_key: str | None = None   # Overrides provider-specific key if set
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    llm_model: str = "claude-sonnet-4-20250514"
    llm_temperature: float = 0.3
    llm_max_tokens: int = 2000
    llm_timeout_seconds: float = 30.0

    # -------------------------------------------------------------------------
    # Shared State Backend
    # -------------------------------------------------------------------------
    # "memory": per-process dicts with per-key asyncio locks. Lost on restart.
    # "redis":  shared across replicas. Still best-effort: entries carry an
    #           expiry and nothing here is treated as a source of truth.
    # -------------------------------------------------------------------------
    state_backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/2"
    redis_key_prefix: str = "fundbot"

    # -------------------------------------------------------------------------
    # Event Gate — Deduplication
    # -------------------------------------------------------------------------
    # The whole dedup set is cleared once per interval (not per-entry TTL).
    # -------------------------------------------------------------------------
    dedup_sweep_interval_seconds: float = 600.0

    # -------------------------------------------------------------------------
    # Input Sanitizer
    # -------------------------------------------------------------------------
    max_message_length: int = 4000

    # -------------------------------------------------------------------------
    # Admission Controller — Rate Limit + Daily Budget
    # -------------------------------------------------------------------------
    rate_limit_max_requests: int = 20
    rate_limit_window_seconds: float = 300.0
    rate_limit_warning_fraction: float = 0.8

    cost_per_million_tokens: float = 15.0  # USD, input + output blended
    daily_budget_usd: float = 10.0
    budget_window_seconds: float = 24 * 60 * 60
    low_budget_warning_usd: float = 1.0

    # -------------------------------------------------------------------------
    # Response Cache
    # -------------------------------------------------------------------------
    cache_short_ttl_seconds: float = 30.0
    cache_default_ttl_seconds: float = 5 * 60.0
    cache_long_ttl_seconds: float = 30 * 60.0
    cache_max_entries: int = 100
    cache_min_query_length: int = 10

    # -------------------------------------------------------------------------
    # Context Store — Thread Memory
    # -------------------------------------------------------------------------
    thread_max_messages: int = 10
    thread_ttl_seconds: float = 24 * 60 * 60
    history_fetch_page_size: int = 200

    # -------------------------------------------------------------------------
    # Resilient Invoker — Retry Policy
    # -------------------------------------------------------------------------
    # delay = min(base * 2^attempt + U[0, jitter), max)
    # -------------------------------------------------------------------------
    llm_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    retry_jitter_seconds: float = 1.0

    # -------------------------------------------------------------------------
    # Grounding Data
    # -------------------------------------------------------------------------
    # grounding_sources: name → URL of read-only JSON snapshot endpoints,
    # e.g. GROUNDING_SOURCES='{"portfolio": "https://.../snapshot"}'.
    # The whole batch shares one timeout; per-call timeout bounds each fetch.
    # -------------------------------------------------------------------------
    grounding_sources: dict[str, str] = Field(default_factory=dict)
    grounding_batch_timeout_seconds: float = 15.0
    grounding_call_timeout_seconds: float = 10.0

    # -------------------------------------------------------------------------
    # Maintenance & Admin
    # -------------------------------------------------------------------------
    maintenance_interval_seconds: float = 10 * 60.0
    admin_token: str = ""  # Empty disables the /admin endpoints

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level and format to the root logger."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


settings = Settings()
