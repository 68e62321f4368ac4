from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from nodecascade.logging import get_logger

logger = get_logger(__name__)


# USD per million tokens: (input, output)
DEFAULT_MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    "google/gemini-3-flash-preview": (0.10, 0.40),
    "google/gemini-3-pro-preview": (1.25, 10.00),
    "google/gemini-2.5-pro": (1.25, 10.00),
    "google/gemini-2.5-flash": (0.15, 0.60),
    "google/gemini-2.5-flash-lite": (0.075, 0.30),
    "openai/gpt-5.2": (2.50, 10.00),
    "openai/gpt-5": (2.50, 10.00),
    "openai/gpt-5-mini": (0.30, 1.20),
    "openai/gpt-5-nano": (0.10, 0.40),
    "perplexity/sonar": (1.00, 1.00),
    "perplexity/sonar-pro": (3.00, 15.00),
    "perplexity/sonar-reasoning-pro": (2.00, 8.00),
    "perplexity/sonar-deep-research": (2.00, 8.00),
}

FALLBACK_MODEL_PRICING: Tuple[float, float] = (0.10, 0.40)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/nodecascade", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/nodecascade", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets and relaxed Redis requirements for tests.",
    )

    completion_api_url: str = env_field(
        "https://ai.gateway.lovable.dev/v1/chat/completions", "COMPLETION_API_URL"
    )
    completion_api_key: str | None = env_field(None, "COMPLETION_API_KEY")
    perplexity_api_url: str = env_field(
        "https://api.perplexity.ai/chat/completions", "PERPLEXITY_API_URL"
    )
    perplexity_api_key: str | None = env_field(None, "PERPLEXITY_API_KEY")
    firecrawl_api_url: str = env_field("https://api.firecrawl.dev", "FIRECRAWL_API_URL")
    firecrawl_api_key: str | None = env_field(None, "FIRECRAWL_API_KEY")
    crawl_poll_interval_seconds: float = env_field(2.0, "CRAWL_POLL_INTERVAL_SECONDS")
    crawl_timeout_seconds: float = env_field(120.0, "CRAWL_TIMEOUT_SECONDS")
    http_timeout_seconds: float = env_field(120.0, "HTTP_TIMEOUT_SECONDS")

    abi_sync_url: str | None = env_field(None, "ABI_SYNC_URL")
    abivc_sync_url: str | None = env_field(None, "ABIVC_SYNC_URL")
    sync_api_key: str | None = env_field(None, "SYNC_API_KEY")

    node_output_cas_retries: int = env_field(
        5, "NODE_OUTPUT_CAS_RETRIES", ge=1, le=50
    )
    run_report_ttl_seconds: int = env_field(
        60 * 60 * 24, "RUN_REPORT_TTL_SECONDS", ge=60
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value or []


class SelfImprovementSettings(BaseModel):
    """Evaluation toggles and alert thresholds for generative nodes."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = True
    alert_threshold: int = 50
    auto_tag_low_quality: bool = True
    evaluation_limit: int = Field(20, ge=1)
    metrics_hallucination_enabled: bool = True
    metrics_data_quality_enabled: bool = True
    metrics_complexity_enabled: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any] | None) -> "SelfImprovementSettings":
        if not row:
            return cls()
        # null values in the stored blob mean "use the default"
        return cls(**{key: value for key, value in row.items() if value is not None})


@dataclass(frozen=True)
class RunConfig:
    """Immutable per-invocation snapshot threaded through one trigger chain."""

    self_improvement: SelfImprovementSettings = field(
        default_factory=SelfImprovementSettings
    )
    pricing_overrides: Mapping[str, Tuple[float, float]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    crawl_poll_interval_seconds: float = 2.0
    crawl_timeout_seconds: float = 120.0
    cas_retries: int = 5

    @classmethod
    def load(cls, store, settings: Settings | None = None) -> "RunConfig":
        settings = settings or get_settings()
        overrides: Dict[str, Tuple[float, float]] = {}
        for row in store.list_pricing_overrides():
            input_cost = row.get("input_cost_per_million")
            output_cost = row.get("output_cost_per_million")
            if input_cost is None and output_cost is None:
                continue
            default_in, default_out = DEFAULT_MODEL_PRICING.get(
                row["model_id"], FALLBACK_MODEL_PRICING
            )
            overrides[row["model_id"]] = (
                float(input_cost) if input_cost is not None else default_in,
                float(output_cost) if output_cost is not None else default_out,
            )
        app_settings = store.get_app_settings() or {}
        snapshot = cls(
            self_improvement=SelfImprovementSettings.from_row(
                app_settings.get("self_improvement_settings")
            ),
            pricing_overrides=MappingProxyType(overrides),
            crawl_poll_interval_seconds=settings.crawl_poll_interval_seconds,
            crawl_timeout_seconds=settings.crawl_timeout_seconds,
            cas_retries=settings.node_output_cas_retries,
        )
        logger.info(
            "run_config_loaded",
            pricing_overrides=len(overrides),
            evaluation_enabled=snapshot.self_improvement.enabled,
            alert_threshold=snapshot.self_improvement.alert_threshold,
        )
        return snapshot

    def price_for(self, model: str) -> Tuple[float, float]:
        return (
            self.pricing_overrides.get(model)
            or DEFAULT_MODEL_PRICING.get(model)
            or FALLBACK_MODEL_PRICING
        )

    def estimate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        input_price, output_price = self.price_for(model)
        return (prompt_tokens * input_price + completion_tokens * output_price) / 1_000_000


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
