import os
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Project Info
    PROJECT_NAME: str = "Daily Stories API"
    API_V1_STR: str = "/api/v1"
    FRONTEND_URL: str = Field(
        "http://localhost:3000",
        description="Origin of the mobile web client allowed through CORS"
    )

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = Field(False, description="Emit log records as JSON lines")

    # Database Configuration
    DATABASE_URL: Optional[str] = None
    DB_HOST: str = "localhost"
    DB_NAME: str = "daily_stories"
    DB_PASSWORD: str = ""
    DB_PORT: str = "5432"
    DB_USER: str = ""

    # Database Configuration - Connection Pooling
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 1800

    # Cache Configuration
    CACHE_BACKEND: str = Field(
        "redis",
        description="Either 'redis' or 'memory' (process-local, development only)"
    )
    REDIS_URL: str = Field(
        "redis://localhost:6379/0",
        description="Full Redis connection URL including credentials"
    )
    REDIS_TIMEOUT: int = 5
    CACHE_PREFIX: str = "daily_stories"

    # Cache TTL tiers, in seconds
    CACHE_TTL_STORY: int = 600
    CACHE_TTL_MEMBER: int = 300
    CACHE_TTL_LEADERBOARD: int = 1800
    CACHE_TTL_TRENDS: int = 1800
    CACHE_TTL_GLOBAL: int = 3600

    # Engagement rules
    VIEW_DEDUP_WINDOW_MINUTES: int = Field(
        30,
        description="Repeated views from one attribution key inside this window count once"
    )
    VIEW_RATE_LIMIT: str = "60/minute"
    MIN_RATINGS_FOR_RELIABILITY: int = 5
    HIGH_QUALITY_THRESHOLD: float = 4.0
    TRENDING_MIN_RATINGS: int = 3
    INCREMENTAL_AGGREGATION: bool = Field(
        False,
        description="Apply signed deltas to rating aggregates instead of rescanning"
    )

    model_config = SettingsConfigDict(
        env_file=".env" if os.path.isfile(".env") else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        validate_assignment=True,
    )

    @field_validator("CACHE_BACKEND")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        if v not in ("redis", "memory"):
            raise ValueError("CACHE_BACKEND must be 'redis' or 'memory'")
        return v

    @field_validator(
        "CACHE_TTL_STORY",
        "CACHE_TTL_MEMBER",
        "CACHE_TTL_LEADERBOARD",
        "CACHE_TTL_TRENDS",
        "CACHE_TTL_GLOBAL",
        "VIEW_DEDUP_WINDOW_MINUTES",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode="after")
    def assemble_database_url(self) -> "Settings":
        if self.DATABASE_URL:
            return self
        if all([self.DB_USER, self.DB_HOST, self.DB_PORT, self.DB_NAME]):
            # Bypass validate_assignment to avoid re-running this validator
            object.__setattr__(
                self,
                "DATABASE_URL",
                f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}",
            )
        return self


settings = Settings()
