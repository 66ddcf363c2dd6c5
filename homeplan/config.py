"""
Centralized configuration for the plan generation client.

All settings are loaded from environment variables with sensible defaults.
Pydantic Settings provides validation and type coercion.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env then .env.local (so .env.local overrides).
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env")
_env_local = _repo_root / ".env.local"
if _env_local.exists():
    load_dotenv(_env_local, override=True)


class _Section(BaseSettings):
    # populate_by_name lets tests build sections with field names instead of env aliases
    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")


class GeminiConfig(_Section):
    """Upstream model identity and generation parameters."""

    api_key: str = Field(default="", validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_API_KEY", "api_key"))
    model: str = Field(default="gemini-2.5-pro", alias="GEMINI_MODEL")
    temperature: float = Field(default=0.3, alias="GEMINI_TEMPERATURE")
    max_output_tokens: int = Field(default=4000, alias="GEMINI_MAX_OUTPUT_TOKENS")
    top_p: float = Field(default=0.95, alias="GEMINI_TOP_P")
    top_k: int = Field(default=40, alias="GEMINI_TOP_K")
    # 0 disables thinking tokens; None leaves the model default in place
    thinking_budget: Optional[int] = Field(default=0, alias="GEMINI_THINKING_BUDGET")
    use_structured_output: bool = Field(
        default=True,
        alias="GEMINI_STRUCTURED_OUTPUT",
        description="Ask for application/json constrained by the plan response schema.",
    )


class RetryConfig(_Section):
    """Retry, backoff and circuit breaker tuning. Delays are in seconds."""

    max_retries: int = Field(default=3, alias="PLAN_MAX_RETRIES")
    base_delay: float = Field(default=1.0, alias="PLAN_RETRY_BASE_DELAY")
    max_delay: float = Field(default=10.0, alias="PLAN_RETRY_MAX_DELAY")
    backoff_multiplier: float = Field(default=2.0, alias="PLAN_RETRY_BACKOFF_MULTIPLIER")
    max_jitter: float = Field(default=1.0, alias="PLAN_RETRY_MAX_JITTER")
    adaptive_backoff: bool = Field(
        default=True,
        alias="PLAN_ADAPTIVE_BACKOFF",
        description="Scale the base delay by error kind (rate limit, network, timeout).",
    )
    circuit_breaker_threshold: int = Field(default=5, alias="PLAN_CIRCUIT_BREAKER_THRESHOLD")
    circuit_breaker_reset_seconds: float = Field(default=60.0, alias="PLAN_CIRCUIT_BREAKER_RESET_SECONDS")


class PerformanceConfig(_Section):
    """Cache, timeout and concurrency limits."""

    enable_caching: bool = Field(default=True, alias="PLAN_ENABLE_CACHING")
    cache_expiration_seconds: float = Field(default=300.0, alias="PLAN_CACHE_EXPIRATION_SECONDS")
    request_timeout_seconds: float = Field(
        default=600.0,
        alias="PLAN_REQUEST_TIMEOUT_SECONDS",
        description="Per-attempt upstream timeout; also bounds the wait for each streamed fragment.",
    )
    max_concurrent_requests: int = Field(
        default=10,
        alias="PLAN_MAX_CONCURRENT_REQUESTS",
        description="Caps in-flight upstream calls per client instance.",
    )
    enable_token_monitoring: bool = Field(default=True, alias="PLAN_ENABLE_TOKEN_MONITORING")


class PromptConfig(_Section):
    """Prompt template selection."""

    enable_templating: bool = Field(default=True, alias="PLAN_ENABLE_TEMPLATING")
    fallback_template: str = Field(default="structured-v2", alias="PLAN_FALLBACK_TEMPLATE")
    templates_file: str = Field(
        default="prompt_templates.yaml",
        alias="PLAN_TEMPLATES_FILE",
        description="Extra templates loaded from the config directory at client construction.",
    )


class ObservabilityConfig(_Section):
    """Logging level and Prometheus metrics."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=False, alias="PROMETHEUS_METRICS_ENABLED")
    metrics_port: int = Field(default=8000, alias="PROMETHEUS_METRICS_PORT")


class YAMLConfigLoader:
    """Loads YAML config files from a configurable directory."""

    def __init__(self, config_dir: str | Path = "config") -> None:
        path = Path(config_dir)
        self._dir = path if path.is_absolute() else _repo_root / path

    def load(self, filename: str) -> dict[str, Any]:
        """Load a YAML file; returns empty dict if the file is absent or not a mapping."""
        import yaml

        path = self._dir / filename
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}


class Settings(BaseSettings):
    """Root settings container: access all config from one object."""

    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # YAML-loaded config (populated in get_settings)
    prompt_templates: dict[str, Any] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance. Cached after first call."""
    settings = Settings()
    loader = YAMLConfigLoader()
    settings.prompt_templates = loader.load(settings.prompt.templates_file)
    return settings
