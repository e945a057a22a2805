# clinic_scheduling/config.py - configuration management
from dotenv import load_dotenv

load_dotenv()
from typing import Union
from functools import lru_cache
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="Clinic Scheduling Service", alias="APP_NAME")
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(default="sqlite:///./clinic_scheduling.db", alias="DATABASE_URL")
    database_pool_size: int = Field(default=20, alias="DATABASE_POOL_SIZE")
    database_pool_timeout: int = Field(default=10, alias="DATABASE_POOL_TIMEOUT")
    database_busy_timeout: float = Field(default=15.0, alias="DATABASE_BUSY_TIMEOUT")
    database_statement_timeout_ms: int = Field(default=5000, alias="DATABASE_STATEMENT_TIMEOUT_MS")

    # Security
    secret_key: str = Field(default="change-me-in-production-0123456789abcdef", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000", "http://localhost:5173"], alias="CORS_ORIGINS")

    # Scheduling
    clinic_timezone: str = Field(default="Asia/Ho_Chi_Minh", alias="CLINIC_TIMEZONE")
    default_slot_minutes: int = Field(default=30, alias="DEFAULT_SLOT_MINUTES")

    # Rate limiting
    booking_rate_limit: str = Field(default="5/minute", alias="BOOKING_RATE_LIMIT")
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000", "http://localhost:5173"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("clinic_timezone")
    @classmethod
    def validate_timezone(cls, v):
        if v.upper() == "UTC":
            return "UTC"
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown CLINIC_TIMEZONE '{v}'")
        return v

    @field_validator("default_slot_minutes")
    @classmethod
    def validate_slot_minutes(cls, v):
        if v <= 0:
            raise ValueError("DEFAULT_SLOT_MINUTES must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def tz(self) -> tzinfo:
        """Clinic wall-clock timezone used for day boundaries and recurrence."""
        if self.clinic_timezone == "UTC":
            return timezone.utc
        return ZoneInfo(self.clinic_timezone)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

