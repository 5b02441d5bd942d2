"""Configuration management with environment variables and CLI overrides."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console
from rich.table import Table

# ---------------------------------------------------------------------------
# Sub-config models
# ---------------------------------------------------------------------------


class LLMConfig(BaseSettings):
    """LLM/OpenAI configuration."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_", frozen=True)

    api_key: str = Field(default="", description="OpenAI API key")
    base_url: str = Field(default="https://api.openai.com/v1", description="API base URL")
    model: str = Field(default="gpt-4o-2024-08-06", description="Default model name")
    max_completion_tokens: Optional[int] = Field(
        default=None, description="Max completion tokens per request (None = model default)"
    )


class TimeoutConfig(BaseSettings):
    """Per-request timeout formula for synchronous (no batch) mode.

    timeout = base + max(0, units - 1) * per_unit + ceil(chars / 1000) * per_kchar
              + (image_penalty if the group has a screenshot)

    then clamped to [min, max]. A bound of 0 disables it.
    """

    model_config = SettingsConfigDict(env_prefix="AI_TRANSLATE_TIMEOUT_", frozen=True)

    base_seconds: int = Field(default=15, description="Base timeout for any request")
    per_additional_text_unit_seconds: int = Field(
        default=2, description="Added per text unit beyond the first"
    )
    per_1000_source_chars_seconds: int = Field(
        default=2, description="Added per started 1000 source characters"
    )
    screenshot_penalty_seconds: int = Field(
        default=5, description="Added when the request embeds an image"
    )
    min_seconds: int = Field(default=15, description="Lower clamp (0 = none)")
    max_seconds: int = Field(default=60, description="Upper clamp (0 = none)")


class PoolConfig(BaseSettings):
    """Completion client pool sizing."""

    model_config = SettingsConfigDict(env_prefix="AI_TRANSLATE_POOL_", frozen=True)

    max_connections: int = Field(default=20, description="Max concurrent in-flight requests")
    max_pending_acquires: int = Field(
        default=1000, description="Max requests waiting for a slot before submissions fail"
    )
    acquire_timeout_seconds: float = Field(
        default=600, description="Max seconds a request waits for a free slot"
    )


class RetryConfig(BaseSettings):
    """Retry policy for batch status retrieval (infrastructure calls only)."""

    model_config = SettingsConfigDict(env_prefix="AI_TRANSLATE_RETRY_", frozen=True)

    max_attempts: int = Field(default=10, description="Max retrieval attempts")
    initial_backoff_millis: int = Field(default=500, description="First backoff delay in ms")
    max_backoff_seconds: float = Field(default=30, description="Backoff ceiling in seconds")


class AiTranslateConfig(BaseSettings):
    """Orchestration settings."""

    model_config = SettingsConfigDict(env_prefix="AI_TRANSLATE_", frozen=True)

    related_strings_char_limit: int = Field(
        default=10000, description="Character budget for related strings per request"
    )
    batch_blob_retention_days: int = Field(
        default=1, description="Retention of the batch correlation snapshot"
    )
    import_job_max_backoff_seconds: int = Field(
        default=600, description="Ceiling of the delay between batch import attempts"
    )
    import_job_timeout_seconds: int = Field(
        default=864000, description="Max lifetime of a batch import job"
    )


# ---------------------------------------------------------------------------
# Main AppConfig
# ---------------------------------------------------------------------------


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(env_prefix="", frozen=True)

    log_level: str = Field(default="INFO", description="Logging level")
    data_dir: Path = Field(default=Path("data"), description="Translation memory data directory")
    blob_dir: Path = Field(default=Path("blobs"), description="Durable object store directory")
    glossary_dir: Path = Field(default=Path("glossaries"), description="Named glossary directory")
    screenshot_dir: Path = Field(default=Path("screenshots"), description="Screenshot directory")

    # Sub-configs
    llm: LLMConfig = Field(default_factory=LLMConfig)
    ai_translate: AiTranslateConfig = Field(default_factory=AiTranslateConfig)
    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @classmethod
    def load(cls, env_file: Optional[Path] = None) -> "AppConfig":
        """Load configuration from environment and .env file."""
        from dotenv import load_dotenv

        if env_file and env_file.exists():
            load_dotenv(env_file)
        else:
            # Try to find .env in current directory or parent directories
            load_dotenv()

        return cls(
            llm=LLMConfig(),
            ai_translate=AiTranslateConfig(),
            timeout=TimeoutConfig(),
            pool=PoolConfig(),
            retry=RetryConfig(),
        )


# ---------------------------------------------------------------------------
# Global config singleton
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.load()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def log_config_summary(config: Optional[AppConfig] = None) -> None:
    """Print a summary table of the effective AI translate configuration."""
    console = Console(stderr=True)
    app_config = config or get_config()

    console.print("\n[bold blue]=== AI Translate Configuration ===[/bold blue]")

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Source", style="dim")

    api_key = app_config.llm.api_key
    table.add_row("Model", app_config.llm.model, "OPENAI_MODEL")
    table.add_row(
        "API Key", api_key[:8] + "..." if len(api_key) > 8 else "***", "OPENAI_API_KEY"
    )
    table.add_row("Base URL", app_config.llm.base_url, "OPENAI_BASE_URL")

    timeout = app_config.timeout
    table.add_row(
        "Timeout",
        f"{timeout.base_seconds}s +{timeout.per_additional_text_unit_seconds}s/unit "
        f"+{timeout.per_1000_source_chars_seconds}s/1k chars "
        f"+{timeout.screenshot_penalty_seconds}s/image "
        f"[{timeout.min_seconds}, {timeout.max_seconds}]",
        "AI_TRANSLATE_TIMEOUT_*",
    )
    pool = app_config.pool
    table.add_row(
        "Pool",
        f"{pool.max_connections} concurrent, {pool.max_pending_acquires} pending, "
        f"{pool.acquire_timeout_seconds}s acquire",
        "AI_TRANSLATE_POOL_*",
    )
    retry = app_config.retry
    table.add_row(
        "Retry",
        f"{retry.max_attempts} attempts, {retry.initial_backoff_millis}ms → "
        f"{retry.max_backoff_seconds}s",
        "AI_TRANSLATE_RETRY_*",
    )
    table.add_row(
        "Related strings limit",
        str(app_config.ai_translate.related_strings_char_limit),
        "AI_TRANSLATE_RELATED_STRINGS_CHAR_LIMIT",
    )

    console.print(table)
    console.print()
