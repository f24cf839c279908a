# /lingoflow/config/settings.py

from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App Behavior
    environment: str = Field(default="production")
    api_version: str = "v1"
    workers: int = 1

    # Flow sessions
    session_ttl_seconds: int = 3600
    session_sweep_interval_seconds: int = 300
    event_buffer_size: int = 64
    cancel_grace_seconds: float = 2.0
    default_max_retries: int = 3

    # AI APIs (server-side fallbacks; per-request keys take precedence)
    default_provider: str = "deepseek"
    deepseek_api_key: str | None = None
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    llm_request_timeout: float = 120.0

    # Security
    api_key: str | None = None

    # CORS
    cors_allowed_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
        ]
    )

    # App Metadata & Limits
    rate_limit_per_minute: int = 100

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """
        Handle both string (comma-separated) and list formats for cors_allowed_origins.
        """
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator(
        "session_ttl_seconds",
        "session_sweep_interval_seconds",
        "event_buffer_size",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("Session timings and buffer sizes must be positive")
        return v

    @field_validator("default_max_retries")
    @classmethod
    def retries_not_negative(cls, v):
        if v < 0:
            raise ValueError("DEFAULT_MAX_RETRIES cannot be negative")
        return v

    def provider_api_key(self, provider: str) -> str | None:
        """Server-side key for a provider, if one is configured."""
        return {
            "deepseek": self.deepseek_api_key,
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }.get(provider)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
