"""Engine configuration management."""
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global engine settings loaded from environment variables."""

    PROJECT_NAME: str = "WordStream Sync"
    STORE_NAMESPACE: str = Field("wordstream", description="Key prefix used by shared store backends")

    REDIS_URL: Optional[AnyUrl] = Field(
        None, description="Redis connection string for the shared store and the change bus"
    )
    BUS_CHANNEL: str = Field("wordstream:changes", description="Pub/sub channel for change events")

    REMOTE_BASE_URL: Optional[AnyUrl] = Field(
        None, description="Base URL of the remote document store; remote sync is off when unset"
    )
    REMOTE_REQUEST_TIMEOUT_SECONDS: float = Field(12.0, description="Timeout for remote HTTP calls")
    REMOTE_WORDS_COLLECTION: str = Field(
        "users/{uid}/words", description="Remote collection path for vocabulary documents"
    )

    AUTH_TOKEN_URL: AnyUrl = Field(
        "https://securetoken.googleapis.com/v1/token",
        description="Endpoint exchanging a refresh token for a fresh ID token",
    )
    AUTH_API_KEY: Optional[str] = None
    TOKEN_REFRESH_MARGIN_SECONDS: int = Field(
        300, description="Treat tokens expiring within this window as already expired"
    )

    RETRY_MAX_ATTEMPTS: int = Field(4, description="Total attempts for strict remote operations")
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    RETRY_JITTER_SECONDS: float = 1.0
    AUTH_MAX_RETRIES: int = Field(2, description="Refresh-and-retry cycles for lenient operations")

    WORDS_GROUP_SIZE: int = Field(10, description="Entries per group record in the grouped layout")
    WORDS_LAYOUT: Literal["grouped", "legacy"] = "grouped"
    SNAPSHOT_KEY: str = Field("wordstream_sync_snapshot", description="Store key of the change-bus snapshot")
    PENDING_OPERATIONS_KEY: str = Field(
        "wordstream_pending_operations", description="Store key of queued remote operations"
    )

    # chrome.storage.sync limits, emulated by the in-memory store
    STORE_QUOTA_BYTES: Optional[int] = 102400
    STORE_QUOTA_BYTES_PER_ITEM: Optional[int] = 8192

    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parent.parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Return cached engine settings instance."""

    return Settings()


settings = get_settings()
