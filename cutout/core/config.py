"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Cutout Background Removal"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD

    # ==========================================================================
    # Upload / Intake Settings
    # ==========================================================================
    UPLOAD_MAX_BYTES: int = 10485760  # 10MB
    UPLOAD_MAX_WIDTH: int = 1920
    UPLOAD_MAX_HEIGHT: int = 1080
    UPLOAD_QUALITY: float = 0.8
    UPLOAD_ALLOWED_TYPES: str = "image/jpeg,image/png,image/webp"

    # ==========================================================================
    # Transform Settings
    # ==========================================================================
    TRANSFORM_BACKEND: str = "rembg"  # rembg, http, simulated
    TRANSFORM_MODEL: str = "u2net"
    TRANSFORM_OUTPUT_FORMAT: str = "png"
    TRANSFORM_OUTPUT_QUALITY: float = 0.9

    # Remote service, used by the http backend
    TRANSFORM_API_URL: str = "http://localhost:7000/api/remove"
    TRANSFORM_API_KEY: Optional[str] = None
    TRANSFORM_TIMEOUT_SECONDS: float = 60.0

    SIMULATED_LATENCY_SECONDS: float = 0.5

    # ==========================================================================
    # Retry / Batch Settings
    # ==========================================================================
    MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    BATCH_CONCURRENCY: int = 2  # Also the worker pool size
    PROGRESS_STEP: float = 0.01

    # ==========================================================================
    # Export Settings
    # ==========================================================================
    EXPORT_PATH: str = "./data/exports"

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def allowed_upload_types(self) -> List[str]:
        return [t.strip() for t in self.UPLOAD_ALLOWED_TYPES.split(",") if t.strip()]

    @property
    def retry_base_delay_seconds(self) -> float:
        return self.RETRY_BASE_DELAY_MS / 1000.0


# Global settings instance
settings = Settings()
