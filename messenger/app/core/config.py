"""Application configuration powered by Pydantic settings."""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Global settings shared by the sync client and the reference store."""

    PROJECT_NAME: str = Field(default="Messenger Store")
    VERSION: str = Field(default="0.1.0")
    LOG_LEVEL: str = Field(default="INFO")

    DATABASE_URL: str = Field(default="sqlite:///./messenger.db")
    DATABASE_CREATE_TABLES: bool = Field(default=True)

    STORE_URL: str = Field(default="http://localhost:8000")
    STORE_API_KEY: str | None = Field(default=None)
    STORE_TIMEOUT: float = Field(default=15.0)

    REALTIME_RECONNECT_DELAY: float = Field(default=2.0)
    REALTIME_QUEUE_SIZE: int = Field(default=256)
    REALTIME_KEEPALIVE_SECONDS: float = Field(default=15.0)

    MESSAGES_PER_PAGE: int = Field(default=50)
    CONVERSATIONS_PER_PAGE: int = Field(default=50)
    POLL_INTERVAL_SECONDS: float = Field(default=3.0)

    MESSAGE_MAX_LENGTH: int = Field(default=2000)
    IMAGE_MAX_SIZE_BYTES: int = Field(default=10 * 1024 * 1024)
    ALLOWED_IMAGE_TYPES: tuple[str, ...] = Field(
        default=(
            "image/jpeg",
            "image/png",
            "image/gif",
            "image/webp",
        )
    )
    REACTION_EMOJIS: tuple[str, ...] = Field(default=("\U0001F44D", "✅"))
    INVITE_CODE_LENGTH: int = Field(default=8)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> Settings:
    """Return cached settings instance to avoid repeated parsing."""

    if overrides:
        return Settings(**overrides)
    return Settings()


settings = get_settings()
