from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    app_name: str = Field(default="Studio Booking Client")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Booking platform API
    api_base_url: str = Field(
        default="http://localhost:5000/api",
        validation_alias=AliasChoices("BOOKING_API_URL", "API_BASE_URL"),
    )
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    # Query cache
    stale_after_seconds: float = Field(default=300.0, ge=0)
    transport_retries: int = Field(default=1, ge=0)

    # Durable preferences; kept in memory when unset
    preferences_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("BOOKING_PREFERENCES_PATH", "PREFERENCES_PATH"),
    )

    allowed_origins: List[str] = Field(
        default_factory=list,
        validation_alias="ALLOWED_ORIGINS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
