"""Application configuration settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "MediConnect"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite:///./mediconnect.db"
    DATABASE_ECHO: bool = False
    AUTO_CREATE_SCHEMA: bool = True

    # Sessions
    JWT_SECRET_KEY: str = "dev-only-change-me"
    JWT_ALGORITHM: str = "HS256"
    SESSION_TTL_DAYS: int = 30

    # One-time codes
    OTP_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 300
    OTP_MAX_ATTEMPTS: int = 5
    PHONE_NUMBER_PATTERN: str = r"^\+254[0-9]{9}$"

    # Encounters
    DEFAULT_TIME_BOX_MINUTES: int = 15
    EXTENSION_MINUTES: int = 10
    VIDEO_CALL_BASE_URL: str = "https://wa.me"

    # Prescriptions
    PRESCRIPTION_TTL_DAYS: int = 30
    MASKING_SECRET: str = "dev-only-masking-secret"

    # WhatsApp Cloud API
    WHATSAPP_API_URL: str = "https://graph.facebook.com/v19.0"
    WHATSAPP_PHONE_ID: str = ""
    WHATSAPP_API_KEY: str = ""
    WHATSAPP_OTP_TEMPLATE: str = "otp_verification"

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
