"""
Application settings with validation using pydantic-settings.
Validates all required environment variables at startup.
"""
import socket
from urllib.parse import quote_plus
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _resolve_db_host(host: str) -> str:
    """Resolve DB host to IP so asyncpg avoids getaddrinfo in asyncio context (e.g. in Docker)."""
    if not host or host in ("localhost", "127.0.0.1"):
        return host
    try:
        return socket.gethostbyname(host)
    except socket.gaierror:
        return host


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    DB_USER: str = Field(..., description="PostgreSQL username")
    DB_PASSWORD: str = Field(..., description="PostgreSQL password")
    DB_NAME: str = Field(..., description="PostgreSQL database name")
    DB_HOST: str = Field(default="localhost", description="PostgreSQL host")
    DB_PORT: str = Field(default="5432", description="PostgreSQL port")

    # Redis configuration
    REDIS_HOST: str = Field(default="localhost", description="Redis host")
    REDIS_PORT: int = Field(default=6379, description="Redis port")
    REDIS_DB: int = Field(default=0, description="Redis database number")

    # Security configuration
    JWT_SECRET: Optional[str] = Field(default=None, description="Secret used to verify bearer tokens (required in production)")
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="Enable slowapi rate limits")

    # CORS configuration
    ALLOWED_ORIGINS: str = Field(default="", description="Comma-separated list of allowed CORS origins")

    # Environment
    ENVIRONMENT: str = Field(default="production", description="Environment: development or production")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # M-Pesa Daraja configuration
    MPESA_BASE_URL: str = Field(default="https://sandbox.safaricom.co.ke", description="Daraja API base URL")
    MPESA_CONSUMER_KEY: Optional[str] = Field(default=None, description="Daraja app consumer key")
    MPESA_CONSUMER_SECRET: Optional[str] = Field(default=None, description="Daraja app consumer secret")
    MPESA_PASSKEY: Optional[str] = Field(default=None, description="Lipa na M-Pesa Online passkey")
    MPESA_BUSINESS_SHORT_CODE: str = Field(default="174379", description="Paybill / till short code")
    MPESA_CALLBACK_URL: Optional[str] = Field(default=None, description="Public URL of /api/mpesa/callback")
    MPESA_CALLBACK_SECRET: Optional[str] = Field(default=None, description="HMAC secret for X-Mpesa-Signature (optional)")
    MPESA_SIMULATE: Optional[bool] = Field(default=None, description="Force STK Push simulation on/off")
    MPESA_SIMULATION_DELAY_SECONDS: int = Field(default=10, description="Seconds before a simulated payment succeeds")
    MPESA_TIMEOUT: float = Field(default=30.0, description="Daraja HTTP timeout (seconds)")

    # Pricing
    FREE_DELIVERY_THRESHOLD: int = Field(default=5000, description="Subtotal (KSh) above which delivery is free")
    DELIVERY_FEE: int = Field(default=500, description="Delivery fee (KSh)")

    # Database pool configuration
    DB_POOL_SIZE: int = Field(default=20, description="Database connection pool size")
    DB_MAX_OVERFLOW: int = Field(default=40, description="Database max overflow connections")
    DB_POOL_RECYCLE: int = Field(default=3600, description="Database connection recycle time (seconds)")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        if v not in ("development", "production"):
            raise ValueError("ENVIRONMENT must be 'development' or 'production'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    def validate_production_settings(self) -> list[str]:
        """
        Validate that all required settings are present in production.
        Returns list of missing settings.
        """
        errors = []

        if self.ENVIRONMENT == "production":
            if not self.JWT_SECRET:
                errors.append("JWT_SECRET is required in production")
            if not self.ALLOWED_ORIGINS:
                errors.append("ALLOWED_ORIGINS is required in production")
            if not self.MPESA_CONSUMER_KEY:
                errors.append("MPESA_CONSUMER_KEY is required in production")
            if not self.MPESA_CONSUMER_SECRET:
                errors.append("MPESA_CONSUMER_SECRET is required in production")
            if not self.MPESA_PASSKEY:
                errors.append("MPESA_PASSKEY is required in production")
            if not self.MPESA_CALLBACK_URL:
                errors.append("MPESA_CALLBACK_URL is required in production")

        return errors

    @property
    def db_url(self) -> str:
        """Get database URL. Resolve host to IP so connections work in Docker/async context."""
        host = _resolve_db_host(self.DB_HOST)
        password = quote_plus(self.DB_PASSWORD)
        return f"postgresql+asyncpg://{self.DB_USER}:{password}@{host}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"

    @property
    def mpesa_simulation_enabled(self) -> bool:
        """Simulate STK Push when forced, or in development without Daraja credentials."""
        if self.MPESA_SIMULATE is not None:
            return self.MPESA_SIMULATE
        return not self.is_production and not (self.MPESA_CONSUMER_KEY and self.MPESA_CONSUMER_SECRET)

    @property
    def allowed_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if not self.ALLOWED_ORIGINS:
            return []
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
        # Validate production settings
        errors = _settings.validate_production_settings()
        if errors:
            error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)
    return _settings
