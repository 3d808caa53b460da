"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "schema-workspace"
    max_running_jobs: int = Field(default=5, ge=1)
    tick_interval_s: float = Field(default=1.0, gt=0.0)
    history_limit: int = Field(default=25, ge=1)
    tree_max_depth: int = Field(default=20, ge=1)
    # Empty means snapshots stay in process memory.
    database_url: str = ""
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""
    # Fail at startup instead of on the first AI job when no backend is configured.
    require_llm: bool = False

    model_config = SettingsConfigDict(
        env_prefix="SCHEMA_WORKSPACE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
