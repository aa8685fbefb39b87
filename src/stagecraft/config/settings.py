"""
Application settings using Pydantic.

Provides environment-based configuration loading with STAGECRAFT_ prefix.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STAGECRAFT_",
        extra="ignore",
    )

    # Local state
    data_dir: Path = Path("data")
    iac_dir: Path = Path("iac")
    content_dir: Path = Path("apps")
    content_app: str = "hello-world-html"
    content_marker: str = "CloudFront Distribution is Working!"
    # Single-page apps are built with their own toolchain; stages D and E upload the bundle
    react_app: str = "hello-world-react"
    api_app: str = "hello-world-json"
    app_build_dir: str = "dist"
    api_marker: str = "AWS Lambda API Working!"

    # AWS
    certificate_region: str = "us-east-1"

    # Resource Prober: certificate issuance (30s x 30 = 15 minutes)
    certificate_poll_interval: float = 30.0
    certificate_max_attempts: int = 30

    # Resource Prober: distribution propagation (30s x 90 = 45 minutes)
    distribution_poll_interval: float = 30.0
    distribution_max_attempts: int = 90

    # Resource Prober: edge cache invalidation (20s x 45 = 15 minutes)
    invalidation_poll_interval: float = 20.0
    invalidation_max_attempts: int = 45

    # Transient provider retries (per call, inside a step)
    provider_max_attempts: int = 3
    provider_backoff_multiplier: float = 2.0
    provider_backoff_max: float = 30.0

    # Rollback: "still in use" delete retries
    rollback_delete_attempts: int = 10
    rollback_delete_interval: float = 30.0

    # HTTP validation checks
    http_timeout: float = 15.0

    # Template engine
    template_timeout: int = 1800
    template_command: str = "npx"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
