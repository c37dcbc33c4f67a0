"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

ImageInclusionPolicy = Literal["all", "recent", "recent-user", "recent-assistant"]


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    openrouter_api_key: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "openrouter_api_key"),
    )
    openrouter_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://openrouter.ai/api/v1"),
        validation_alias=AliasChoices(
            "OPENROUTER_BASE_URL", "base_url", "openrouter_base_url"
        ),
    )
    openrouter_app_url: Optional[AnyHttpUrl] = Field(
        default=None,
        validation_alias=AliasChoices(
            "OPENROUTER_APP_URL",
            "HTTP_REFERER",
            "http_referer",
            "REFERER",
        ),
    )
    openrouter_app_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "OPENROUTER_APP_TITLE",
            "X_TITLE",
            "x_title",
        ),
    )
    default_model: str = Field(
        default="openrouter/auto",
        validation_alias=AliasChoices(
            "OPENROUTER_DEFAULT_MODEL",
            "default_model",
        ),
    )
    system_prompt: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "OPENROUTER_SYSTEM_PROMPT",
            "system_prompt",
        ),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("OPENROUTER_TIMEOUT", "timeout"),
        ge=1,
    )
    error_snippet_chars: int = Field(
        default=500,
        ge=16,
        validation_alias=AliasChoices(
            "OPENROUTER_ERROR_SNIPPET_CHARS", "error_snippet_chars"
        ),
    )
    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/chat_sessions.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db"),
    )

    # Attachment hydration (history images and streamed images)
    hydration_timeout_seconds: float = Field(
        default=8.0,
        gt=0,
        validation_alias=AliasChoices(
            "HYDRATION_TIMEOUT_SECONDS",
            "hydration_timeout_seconds",
        ),
    )
    hydration_max_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "HYDRATION_MAX_BYTES",
            "hydration_max_bytes",
        ),
    )
    max_image_inputs: int = Field(
        default=8,
        ge=0,
        validation_alias=AliasChoices("MAX_IMAGE_INPUTS", "max_image_inputs"),
    )
    image_inclusion_policy: ImageInclusionPolicy = Field(
        default="all",
        validation_alias=AliasChoices(
            "IMAGE_INCLUSION_POLICY", "image_inclusion_policy"
        ),
    )
    recent_window: int = Field(
        default=12,
        ge=1,
        validation_alias=AliasChoices("IMAGE_RECENT_WINDOW", "recent_window"),
    )

    # Incremental persistence of the streaming assistant message
    persist_interval_seconds: float = Field(
        default=0.5,
        ge=0,
        validation_alias=AliasChoices(
            "PERSIST_INTERVAL_SECONDS", "persist_interval_seconds"
        ),
    )
    persist_every_chunks: int = Field(
        default=50,
        ge=1,
        validation_alias=AliasChoices(
            "PERSIST_EVERY_CHUNKS", "persist_every_chunks"
        ),
    )
    assistant_image_cap: int = Field(
        default=6,
        ge=0,
        validation_alias=AliasChoices(
            "ASSISTANT_IMAGE_CAP", "assistant_image_cap"
        ),
    )
    keep_partial_on_error: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "KEEP_PARTIAL_ON_ERROR", "keep_partial_on_error"
        ),
    )

    logging_settings_path: Path = Field(
        default_factory=lambda: Path("logging_settings.conf"),
        validation_alias=AliasChoices(
            "LOGGING_SETTINGS_PATH", "logging_settings_path"
        ),
    )
    log_dir: Path = Field(
        default_factory=lambda: Path("logs/app"),
        validation_alias=AliasChoices("LOG_DIR", "log_dir"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["ImageInclusionPolicy", "Settings", "get_settings"]
