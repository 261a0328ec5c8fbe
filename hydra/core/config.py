"""Core configuration for the HYDRA certification engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CostMonitoringSettings(BaseModel):
    """Daily spend limits for metered decompiler calls."""

    daily_budget_usd: float = 10.0
    alert_threshold_usd: float = 8.0
    estimated_call_cost_usd: float = 0.25


class MadSettings(BaseModel):
    """Decompilation (MAD) toggles, timeouts and cache policy."""

    enabled: bool = False
    selective_decompilation: bool = True
    timeout_seconds: float = 60.0
    max_retries: int = 1
    retry_base_delay: float = 1.0
    cache_ttl_seconds: int = 24 * 60 * 60
    cache_backend: Literal["memory", "redis"] = "memory"
    decompiler: Literal["http", "llm"] = "http"
    decompiler_url: str = "http://localhost:8700"
    cost_monitoring: CostMonitoringSettings = Field(default_factory=CostMonitoringSettings)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HYDRA_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "HYDRA Engine"
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ── Certification policy ─────────────────────────────────────────────
    strict_mode: bool = False
    max_violations: int = 0  # 0 = unlimited
    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    structural_exposure: bool = False
    max_workers: int = 4

    # ── Decompilation ────────────────────────────────────────────────────
    mad: MadSettings = Field(default_factory=MadSettings)

    # ── Redis / Celery ───────────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # ── LLM ──────────────────────────────────────────────────────────────
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    primary_llm_model: str = "claude-sonnet-4-20250514"
    fallback_llm_model: str = "gpt-4o"
    llm_max_tokens: int = 8192
    llm_temperature: float = 0.0
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 1.0
    # USD per million tokens, used to price LLM decompilation
    llm_input_cost_per_mtok: float = 3.0
    llm_output_cost_per_mtok: float = 15.0


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
