"""
Engine configuration using Pydantic Settings.

Supports loading from environment variables and .env files. Per-call routing
(role → model mapping, credentials) lives in ``services.engine.EngineConfig``;
this module only holds process-wide defaults.
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============ Environment Credential Fallbacks ============
    # Checked in this order when no stored credential matches a provider
    api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    google_api_key: Optional[str] = None

    # ============ HTTP ============
    http_timeout: float = 120.0  # seconds, text/image requests
    download_timeout: float = 60.0  # seconds, result downloads

    # ============ Video Jobs ============
    video_poll_interval: float = 5.0  # seconds between status checks
    video_max_poll_attempts: int = 360
    video_max_wait: float = 1800.0  # seconds, wall-clock ceiling per job
    frame_max_width: int = 1024  # start/end frames are downscaled to this width

    # ============ Jimeng ============
    # Used when a Jimeng credential has no base URL (local jimeng-api proxy)
    jimeng_base_url: str = "http://localhost:5100"

    # ============ Qwen ============
    # DashScope image-edit relay used when a Qwen credential has no base URL
    qwen_base_url: str = "http://127.0.0.1:8046"

    # ============ Logging ============
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @property
    def fallback_api_key(self) -> str | None:
        """First environment-provided key, if any."""
        return self.api_key or self.gemini_api_key or self.google_api_key


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
