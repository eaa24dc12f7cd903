"""
Decoupled Auth - Configuration Management

Centralized configuration loaded from environment variables (and .env).

Two groups of settings:
- Settings: process-wide values (environment, database, logging), cached
- AcquisitionSettings: operator switches for acquisition, read fresh on
  every acquisition call so a change takes effect without a restart
"""

from typing import Dict, List
from functools import lru_cache
import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy database URL (postgresql+asyncpg://...)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="decoupled_auth")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")

    # ==================== OBSERVABILITY ====================
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit structured JSON logs"
    )
    SERVICE_NAME: str = Field(
        default="decoupled-auth",
        description="Service name stamped on every log line"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL or POSTGRES_HOST is required")

        if self.is_production:
            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== ACQUISITION SETTINGS ====================

class AcquisitionSettings(BaseSettings):
    """
    Operator switches for user acquisition.

    DECOUPLED_AUTH_ACQUIRE_ON_REGISTRATION: look for an existing decoupled
        user with the same email when someone registers, and take it over
    DECOUPLED_AUTH_REGISTRATION_PREFER_FIRST: during registration, take the
        first matching decoupled user instead of flagging ambiguity
    DECOUPLED_AUTH_PROFILE_ROLES: JSON object mapping profile bundle to the
        role its owner should hold, e.g. {"customer": "customer"}
    """

    model_config = SettingsConfigDict(
        env_prefix="DECOUPLED_AUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    ACQUIRE_ON_REGISTRATION: bool = Field(
        default=True,
        description="Acquire existing decoupled users during registration"
    )
    REGISTRATION_PREFER_FIRST: bool = Field(
        default=False,
        description="Use first-match behavior for registration acquisitions"
    )
    PROFILE_ROLES: Dict[str, str] = Field(
        default_factory=dict,
        description="Profile bundle -> role granted to the profile owner"
    )


def load_acquisition_settings() -> AcquisitionSettings:
    """
    Read acquisition settings from the environment.

    Not cached: called once per acquisition.
    """
    return AcquisitionSettings()
