"""Application settings from environment variables."""

from functools import lru_cache
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()

DEFAULT_JOB_TTL_SECONDS = 60 * 60 * 24
DEFAULT_DISPATCH_TIMEOUT_SECONDS = 5.0
DEFAULT_POLL_TIMEOUT_SECONDS = 15 * 60.0


class Settings(BaseSettings):
    """Application settings from environment."""

    # Generative provider
    gemini_api_key: str = ""
    gemini_api_base: str = "https://generativelanguage.googleapis.com"
    default_model_id: str = "gemini-2.5-flash"
    allowed_model_ids: List[str] = ["gemini-2.5-flash", "gemini-2.5-pro"]
    premium_model_ids: List[str] = ["gemini-2.5-pro"]
    system_instructions: str = ""
    generation_temperature: float = 0.2

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Job record store
    job_store_backend: str = "supabase"  # "supabase" or "memory"
    job_ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS
    job_store_write_attempts: int = 2
    processing_stale_seconds: float = 30 * 60.0

    # Dispatch
    dispatch_mode: str = "local"  # "local" or "remote"
    worker_url: str = ""
    worker_shared_secret: str = ""
    worker_dispatch_timeout_seconds: float = DEFAULT_DISPATCH_TIMEOUT_SECONDS

    # Worker pipeline
    worker_poll_interval_seconds: float = 2.0
    worker_poll_timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS
    provider_upload_timeout_seconds: float = 300.0
    generation_timeout_seconds: float = 600.0

    # Object storage
    gcs_bucket: str = ""
    signed_url_ttl_seconds: int = 60 * 60
    max_upload_bytes: int = 500 * 1024 * 1024
    upload_prefix: str = "uploads/"

    # Access
    admin_password: str = ""
    demo_codes: Dict[str, int] = {}  # seeds the in-memory ledger, JSON in env

    # Configuration
    log_level: str = "INFO"
    api_port: int = 3000
    worker_port: int = 8080

    model_config = {"env_file": ".env", "extra": "ignore"}

    @field_validator("job_ttl_seconds", mode="before")
    @classmethod
    def ttl_positive(cls, v: object) -> object:
        """Fall back to the default TTL for non-positive or unparsable values."""
        try:
            if float(v) <= 0:  # type: ignore[arg-type]
                return DEFAULT_JOB_TTL_SECONDS
        except (TypeError, ValueError):
            return DEFAULT_JOB_TTL_SECONDS
        return v

    @field_validator("worker_dispatch_timeout_seconds", mode="before")
    @classmethod
    def dispatch_timeout_positive(cls, v: object) -> object:
        """Fall back to the default dispatch timeout for non-positive values."""
        try:
            if float(v) <= 0:  # type: ignore[arg-type]
                return DEFAULT_DISPATCH_TIMEOUT_SECONDS
        except (TypeError, ValueError):
            return DEFAULT_DISPATCH_TIMEOUT_SECONDS
        return v

    @field_validator("worker_poll_timeout_seconds", mode="before")
    @classmethod
    def poll_timeout_positive(cls, v: object) -> object:
        """Fall back to the default readiness-poll budget for non-positive values."""
        try:
            if float(v) <= 0:  # type: ignore[arg-type]
                return DEFAULT_POLL_TIMEOUT_SECONDS
        except (TypeError, ValueError):
            return DEFAULT_POLL_TIMEOUT_SECONDS
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
