"""Application configuration for the rendezvous relay."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    api_prefix: str = Field(default="/v1")
    public_base_url: str = Field(default="", description="Origin used for join links; request origin when empty")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    room_ttl_seconds: int = Field(default=120, ge=1)
    sweep_interval_seconds: float = Field(default=5.0, gt=0)
    max_body_bytes: int = Field(default=1_000_000, ge=1)

    rate_limit_requests: int = Field(default=60, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    log_level: str = Field(default="info")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
