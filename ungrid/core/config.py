"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "UnGrid Panel Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Generation Service (Gemini)
    # ==========================================================================
    # Used only when no key was set through the credential store
    GEMINI_API_KEY: Optional[str] = None
    IMAGE_MODEL: str = "gemini-3-pro-image-preview"
    DETECTION_MODEL: str = "gemini-2.5-flash"
    REFUSAL_TEXT_LIMIT: int = 200

    # ==========================================================================
    # Extraction Settings
    # ==========================================================================
    GRID_MARGIN_RATIO: float = 0.02  # inset per side, fraction of cell size
    DETECTION_MAX_SIZE: int = 1024  # long edge sent to panel detection
    DETECTION_FALLBACK_LAYOUT: str = "3x3"
    MAX_IMAGE_SIZE_BYTES: int = 20971520  # 20MB

    # ==========================================================================
    # Defaults
    # ==========================================================================
    DEFAULT_RESOLUTION: str = "2K"
    DEFAULT_ASPECT_RATIO: str = "16:9"
    DEFAULT_MODE: str = "fidelity"

    # ==========================================================================
    # Job Queue
    # ==========================================================================
    JOB_QUEUE_CAPACITY: int = 5

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
