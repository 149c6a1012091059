"""Application configuration using pydantic-settings.

Loads secrets and deployment settings from environment variables and .env file.
Pipeline behavior config (model, batching, pacing, retry) loaded from pipeline.toml.

Pipeline priority: CLI args > pipeline.toml > hardcoded defaults. The environment
only feeds Settings (API key, base URL, database path, logging); --db overrides
DATABASE_PATH.
"""

import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ContentKindName = Literal["post", "topic", "thread"]
ScorePolicy = Literal["clamp", "reject", "store"]

DEFAULT_FORUMS = [
    "COMPOUND",
    "ZKSYNC",
    "GITCOIN",
    "CABIN",
    "SAFE",
    "UNISWAP",
    "ARBITRUM",
]


# ---------------------------------------------------------------------------
# Pipeline settings from pipeline.toml
# ---------------------------------------------------------------------------


class DefaultsTable(BaseModel):
    """The [defaults] table from pipeline.toml."""

    model: str = "openai/gpt-4o-mini"
    temperature: float = 0.0
    timeout: int = 120  # seconds per model call


class PipelineTable(BaseModel):
    """The [pipeline] table from pipeline.toml."""

    batch_size: int = Field(default=100, ge=1)
    max_batches: int | None = Field(default=None, ge=1)
    inter_batch_delay_ms: int = Field(default=1000, ge=0)
    token_budget: int = Field(default=3500, ge=1)
    kinds: list[ContentKindName] = Field(
        default_factory=lambda: ["topic", "post", "thread"]
    )
    max_concurrent_forums: int = Field(default=1, ge=1)
    score_policy: ScorePolicy = "clamp"


class RetryConfig(BaseModel):
    """The [retry] table from pipeline.toml."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_base_ms: int = Field(default=1000, ge=0)
    max_jitter_ms: int = Field(default=250, ge=0)


class ForumsTable(BaseModel):
    """The [forums] table from pipeline.toml."""

    names: list[str] = Field(default_factory=lambda: list(DEFAULT_FORUMS))


class PipelineSettings(BaseModel):
    """Configuration loaded from pipeline.toml."""

    defaults: DefaultsTable = Field(default_factory=DefaultsTable)
    pipeline: PipelineTable = Field(default_factory=PipelineTable)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    forums: ForumsTable = Field(default_factory=ForumsTable)

    def has_forum(self, name: str) -> bool:
        return name in self.forums.names


_PIPELINE_SETTINGS_CACHE: PipelineSettings | None = None

PIPELINE_TOML = Path(__file__).parent.parent / "pipeline.toml"


def load_pipeline_settings(toml_path: Path) -> PipelineSettings:
    """Parse a pipeline.toml file. A missing file yields defaults."""
    if not toml_path.exists():
        return PipelineSettings()
    with open(toml_path, "rb") as f:
        data = tomllib.load(f)
    return PipelineSettings.model_validate(data)


def get_pipeline_settings() -> PipelineSettings:
    """Load and cache pipeline settings from pipeline.toml."""
    global _PIPELINE_SETTINGS_CACHE
    if _PIPELINE_SETTINGS_CACHE is None:
        _PIPELINE_SETTINGS_CACHE = load_pipeline_settings(PIPELINE_TOML)
    return _PIPELINE_SETTINGS_CACHE


# ---------------------------------------------------------------------------
# Environment settings from .env (API keys, secrets, env-var overrides)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Keys
    openrouter_api_key: str

    # OpenRouter base URL
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Storage
    database_path: str = "data/pipeline.db"

    # Logging
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
