"""Application settings using pydantic-settings.

Loads configuration from environment variables (``ECHOSTREAM_`` prefix)
with .env file support.
"""

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ECHOSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,  # Allow both field name and alias
    )

    # Environment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    stream_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = Field(
        default=None,
        description="Level for the frame-by-frame streaming loggers (unset = log_level)",
    )

    # Chat backend
    api_base_url: str = Field(
        default="http://localhost:8080/api",
        description="Base URL of the chat backend (without the /v1 prefix)",
        validation_alias=AliasChoices("api_base_url", "echostream_api_base_url", "vite_api_base_url"),
    )
    api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token sent with every request (empty = no Authorization header)",
    )
    user_id: int | None = Field(
        default=None,
        description="Value of the X-User-Id header (unset = header omitted)",
    )

    # Timeouts (the transport owns timeout semantics)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for plain request/response calls",
    )
    stream_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Read timeout for a streamed answer (server side emitter lives 5 minutes)",
    )

    # Streaming behaviour
    error_display_seconds: float = Field(
        default=3.0,
        ge=0.0,
        description="How long a stream error stays visible before the state returns to idle",
    )
    title_max_length: int = Field(
        default=30,
        ge=1,
        description="Length of the provisional title derived from the opening message",
    )
    enable_context: bool = Field(
        default=True,
        description="Ask the backend to include conversation history",
    )
    context_rounds: int = Field(default=5, ge=0, le=50)

    # Listing
    page_size: int = Field(default=20, ge=1, le=100)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded once and reused.
    """
    return Settings()
