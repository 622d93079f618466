from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "test", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "commerce"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 40
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth
    # Placeholder secret keeps local/test runs working; deployments override via env.
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"
    ADMIN_ROLES: list[str] = ["service_role", "admin"]

    # Redis (ARQ worker queue, shared cache, distributed rate limits)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Read cache: "memory://" is per-process, "redis://..." is shared
    CACHE_URL: str = "memory://"
    CACHE_KEY_PREFIX: str = "store"
    STOCK_CACHE_TTL_SECONDS: int = 30
    CART_CACHE_TTL_SECONDS: int = 30
    ORDER_CACHE_TTL_SECONDS: int = 60

    # Rate limiting
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    DEFAULT_RATE_LIMIT: str = "100 per 15 minutes"
    CHECKOUT_RATE_LIMIT: str = "10 per 5 minutes"

    # Storefront
    STORE_CURRENCY: str = "TZS"
    CART_CURRENCY: str = "TZS"
    PAYMENT_PROVIDER: str = "clickpesa"
    MIN_ORDER_TOTAL: Decimal = Decimal("0.01")
    MAX_ORDER_TOTAL: Decimal = Decimal("1000000")

    # Stock validation fan-out
    STOCK_VALIDATION_BATCH_SIZE: int = 20
    STOCK_VALIDATION_CONCURRENCY: int = 5
    STOCK_VALIDATION_TIMEOUT_SECONDS: float = 10.0

    # Order lifecycle
    PENDING_ORDER_TIMEOUT_MINUTES: int = 60
    FAILED_ORDER_RETENTION_HOURS: int = 24
    CLEANUP_API_KEY: Optional[str] = None

    # Payment provider callbacks
    PAYMENT_WEBHOOK_SECRET: Optional[str] = None

    # Customer care contact shown on partial-stock responses
    CUSTOMER_CARE_EMAIL: str = "support@example.com"
    CUSTOMER_CARE_PHONE: str = "+255 700 000 000"
    CUSTOMER_CARE_HOURS: str = "Mon-Fri 9AM-6PM EAT"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
