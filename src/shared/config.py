"""Configuration management for the MCP host.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RequiredModel(BaseModel):
    """A model that must be present in the local inference backend."""
    model: str
    reason: str = ""


class TokenMapping(BaseModel):
    """Environment variables that receive a provider's tokens at install."""
    primary: str
    secondary: Optional[str] = None


class OllamaSettings(BaseSettings):
    """Local inference backend configuration."""
    host: str = Field(default="http://localhost:54589", description="Ollama base URL")
    general_model: str = Field(default="phi3:3.8b", description="Model used for tool analysis")
    required_models: list[RequiredModel] = Field(
        default_factory=lambda: [
            RequiredModel(model="phi3:3.8b", reason="General tasks (tools analysis, chat summarization)"),
        ]
    )
    request_timeout: float = Field(default=120.0, gt=0)
    model_wait_timeout: float = Field(default=600.0, gt=0, description="Seconds to wait for a model")
    server_ready_attempts: int = Field(default=30, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="OLLAMA_",
        env_file=".env",
        extra="ignore"
    )


class OAuthSettings(BaseSettings):
    """OAuth proxy configuration."""
    proxy_url: str = Field(default="https://oauth.dev.archestra.ai")
    token_timeout: float = Field(default=30.0, gt=0)
    probe_timeout: float = Field(default=5.0, gt=0)
    expiry_buffer_minutes: int = Field(default=5, ge=0)
    token_mappings: dict[str, TokenMapping] = Field(
        default_factory=lambda: {
            "slack-browser": TokenMapping(primary="SLACK_MCP_XOXC_TOKEN", secondary="SLACK_MCP_XOXD_TOKEN"),
            "linkedin-browser": TokenMapping(primary="LINKEDIN_COOKIE"),
        }
    )

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_",
        env_file=".env",
        extra="ignore"
    )


class EventSettings(BaseSettings):
    """Event bus configuration."""
    heartbeat_interval: float = Field(default=1.0, gt=0)
    subscriber_buffer: int = Field(default=64, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="EVENTS_",
        env_file=".env",
        extra="ignore"
    )


class RegistrySettings(BaseSettings):
    """Record store configuration."""
    backend: str = Field(default="file", description="Store backend: memory, file")
    path: str = Field(default="data/registry.json")

    model_config = SettingsConfigDict(
        env_prefix="REGISTRY_",
        env_file=".env",
        extra="ignore"
    )


class SandboxSettings(BaseSettings):
    """Sandbox runtime configuration."""
    connect_attempts: int = Field(default=3, gt=0)
    startup_timeout: float = Field(default=60.0, gt=0)
    shutdown_grace_seconds: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="SANDBOX_",
        env_file=".env",
        extra="ignore"
    )


class APISettings(BaseSettings):
    """HTTP API configuration."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=54587)

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    ollama: OllamaSettings = Field(default_factory=OllamaSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    events: EventSettings = Field(default_factory=EventSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    api: APISettings = Field(default_factory=APISettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_HOST_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file, returning an empty dict if absent."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_HOST_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
