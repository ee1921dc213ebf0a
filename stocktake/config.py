from decimal import Decimal
from functools import lru_cache
from typing import Optional
import json

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./stocktake.db"

    # Pool sizing (ignored for SQLite)
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30  # seconds
    DB_POOL_RECYCLE: int = 1800  # seconds

    # App Settings
    APP_NAME: str = "Stocktake Counting Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Counting rules
    CONFLICT_TOLERANCE: Decimal = Decimal("0")  # Max quantity gap still treated as a match
    REQUIRE_DISTINCT_SECOND_COUNTER: bool = True  # Count 2 must be done by someone other than count 1
    START_RUN_MAX_ATTEMPTS: int = 3  # Retries when a concurrent start wins the unique index

    # Run store capabilities (resolved once at startup)
    SCHEMA_VERSION: int = 2
    RUN_OWNER_USER_ID_ENABLED: Optional[bool] = None  # None = derive from SCHEMA_VERSION
    RUN_OPERATOR_NAME_ENABLED: bool = True

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('CONFLICT_TOLERANCE')
    @classmethod
    def check_tolerance(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("CONFLICT_TOLERANCE must be positive or zero")
        return v

    @field_validator('START_RUN_MAX_ATTEMPTS')
    @classmethod
    def check_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("START_RUN_MAX_ATTEMPTS must be at least 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
