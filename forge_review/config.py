"""
Configuration Management Module

This module handles all application configuration using Pydantic Settings.
Configuration is loaded from environment variables with strong typing and validation.

Design Decisions:
- Use Pydantic Settings for automatic environment variable loading
- Provide sensible defaults so the service starts against a local forge
- Validate configuration at startup (fail-fast approach)
- Comma-separated strings for list settings, exposed as parsed properties
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All sensitive values are loaded from environment variables only,
    never hardcoded or logged.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # =========================================================================
    # Forge Configuration
    # =========================================================================
    forge_provider: str = Field(
        default="gitea",
        description="Forge type: gitea, github or gitlab"
    )

    forge_base_url: str = Field(
        default="http://localhost:3000",
        description="Forge base URL, e.g. https://gitea.example.com"
    )

    forge_token: str = Field(
        default="",
        description="API token with write:repository scope"
    )

    forge_webhook_secret: Optional[str] = Field(
        default=None,
        description="Webhook secret for signature verification"
    )

    bot_login: Optional[str] = Field(
        default=None,
        description="Login of the review bot; limits incremental tracking to its own reviews"
    )

    # =========================================================================
    # Forge Transport
    # =========================================================================
    forge_max_attempts: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Attempts per forge API call (1 disables retries)"
    )

    forge_timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        description="Timeout for a single forge API call"
    )

    forge_rate_limit_per_minute: int = Field(
        default=600,
        ge=1,
        description="Forge API requests allowed per minute"
    )

    # =========================================================================
    # Review Triggers and Scope
    # =========================================================================
    trigger_keywords: str = Field(
        default="/oc,/opencode",
        description="Comma-separated comment tokens that request a review"
    )

    incremental_review: bool = Field(
        default=True,
        description="Review only commits added since the last review"
    )

    strict_diff_validation: bool = Field(
        default=False,
        description="Drop hunks whose line counts disagree with their header"
    )

    file_patterns: str = Field(
        default="",
        description="Comma-separated globs; when set only matching files are reviewed"
    )

    ignore_patterns: str = Field(
        default="**/*.min.js,**/*.lock,vendor/**,node_modules/**,dist/**",
        description="Comma-separated globs of files never reviewed"
    )

    max_diff_chars: int = Field(
        default=60000,
        ge=1000,
        description="Character limit for the diff sent to the reviewer"
    )

    review_language: str = Field(
        default="en",
        description="Language the reviewer should answer in"
    )

    # =========================================================================
    # Orchestration
    # =========================================================================
    serialize_reviews_per_pr: bool = Field(
        default=False,
        description="Run at most one review per pull request at a time"
    )

    review_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Abort the reviewer call after this many seconds"
    )

    enable_forge_submission: bool = Field(
        default=True,
        description="Submit reviews to the forge (disable for dry runs)"
    )

    # =========================================================================
    # OpenAI Configuration
    # =========================================================================
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key"
    )

    openai_base_url: Optional[str] = Field(
        default=None,
        description="Override for OpenAI-compatible endpoints"
    )

    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Model used for code review"
    )

    openai_max_tokens: int = Field(
        default=4096,
        ge=100,
        le=128000,
        description="Maximum tokens for AI response"
    )

    openai_temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Temperature for AI responses"
    )

    openai_rate_limit_rpm: int = Field(
        default=60,
        ge=1,
        description="OpenAI API rate limit per minute"
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind the server"
    )

    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port to bind the server"
    )

    # =========================================================================
    # Logging Configuration
    # =========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    log_json_format: bool = Field(
        default=True,
        description="Enable JSON logging format"
    )

    log_requests: bool = Field(
        default=False,
        description="Enable request/response logging"
    )

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("forge_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Ensure the provider type is one we know about."""
        valid_providers = {"gitea", "github", "gitlab"}
        v_lower = v.lower()
        if v_lower not in valid_providers:
            raise ValueError(f"Invalid provider: {v}. Must be one of {valid_providers}")
        return v_lower

    @field_validator("forge_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    # =========================================================================
    # Computed Properties
    # =========================================================================
    @property
    def trigger_keywords_list(self) -> List[str]:
        """Get list of comment trigger tokens."""
        return _split_csv(self.trigger_keywords)

    @property
    def file_patterns_list(self) -> List[str]:
        """Get list of include globs."""
        return _split_csv(self.file_patterns)

    @property
    def ignore_patterns_list(self) -> List[str]:
        """Get list of exclude globs."""
        return _split_csv(self.ignore_patterns)


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses lru_cache to ensure settings are only loaded once,
    which is important for performance and consistency.

    Returns:
        Settings instance
    """
    return Settings()
