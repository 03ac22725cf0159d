"""Settings for FastGPT access, persistence and orchestration.

Values come from an optional YAML file. Sections the file omits read
their ``FASTGPT_``, ``STORE_`` and ``ORCHESTRATOR_`` environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FastGPTSettings(BaseSettings):
    """FastGPT completion API configuration."""
    base_url: str = Field(default="https://cloud.fastgpt.io", description="FastGPT base URL")
    completions_path: str = Field(default="/api/v1/chat/completions")
    timeout_seconds: float = Field(default=60.0, gt=0)

    # Privileged dispatch credentials, never an agent's own key
    dispatch_api_key: Optional[str] = Field(default=None, description="Dispatch center API key")
    discussion_dispatch_api_key: Optional[str] = Field(
        default=None,
        description="Discussion-mode dispatch key, falls back to dispatch_api_key"
    )

    # Dispatch retries (transient I/O only)
    dispatch_max_attempts: int = Field(default=3, ge=1)
    dispatch_retry_delay_seconds: float = Field(default=1.0, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="FASTGPT_",
        env_file=".env",
        extra="ignore"
    )


class StoreSettings(BaseSettings):
    """Persistence configuration."""
    backend: str = Field(default="memory", description="Store backend: memory, mongodb")
    mongodb_url: str = Field(default="mongodb://localhost:27017")
    database: str = Field(default="agent")

    # Well-known fallback agent used when dispatch yields nothing usable
    default_agent_id: str = Field(default="default")
    default_agent_name: str = Field(default="默认智能体")

    # Conversation save retries (conflicts and transient I/O)
    save_max_attempts: int = Field(default=3, ge=1)
    save_retry_delay_seconds: float = Field(default=1.0, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        env_file=".env",
        extra="ignore"
    )


class OrchestratorSettings(BaseSettings):
    """Orchestrator and HTTP server configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Discussion mode
    discussion_rounds: int = Field(default=3, ge=1)
    round_delay_seconds: float = Field(default=1.0, ge=0)

    title_max_length: int = Field(default=20, gt=0)

    # Live group boards kept in memory, least recently used evicted first
    board_cache_size: int = Field(default=128, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    fastgpt: FastGPTSettings = Field(default_factory=FastGPTSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    # Seed data for the in-memory backend
    agents: list[dict[str, Any]] = Field(default_factory=list)
    groupchats: list[dict[str, Any]] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="GROUPCHAT_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """
        Build settings from a YAML file.

        A missing file yields defaults, so a bare checkout starts with the
        in-memory store and no seed data.
        """
        return cls(**_read_yaml(Path(path)))


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


@lru_cache
def get_settings() -> Settings:
    """Settings from ``$GROUPCHAT_CONFIG_PATH`` (default ``config/settings.yaml``), cached."""
    return Settings.from_yaml(os.environ.get("GROUPCHAT_CONFIG_PATH", "config/settings.yaml"))
