"""
Application configuration

SECURITY: Defaults are fail-safe for production.
- DEBUG defaults to False
- SECRET_KEY and DATABASE_URL have no defaults (will fail if not set)

Business constants (tax rate, shipping tiers, stock thresholds, checkout TTL)
live here so callers never hardcode them.
"""
import json
import logging
from decimal import Decimal
from typing import List, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App - defaults are PRODUCTION safe
    APP_NAME: str = "Storefront Checkout"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database - NO DEFAULT (will fail if not set)
    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert bare postgres:// URLs to asyncpg format."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    # Create tables on startup (local runs); production uses migrations
    AUTO_CREATE_TABLES: bool = False

    # Auth - NO DEFAULT SECRET KEY
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Anonymous session identity
    SESSION_ID_HEADER: str = "X-Session-Id"
    SESSION_COOKIE_NAME: str = "sf_session_id"

    # CORS - accepts JSON array or comma-separated string
    CORS_ORIGINS: Union[str, List[str]] = DEFAULT_CORS_ORIGINS

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            if not v.strip():
                return DEFAULT_CORS_ORIGINS
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Stripe Payments
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"

    # Redis (webhook idempotency)
    REDIS_URL: str = ""

    # Database Pool Configuration
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "100/minute"
    RATE_LIMIT_CHECKOUT: str = "10/minute"

    # Cart pricing rules
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_LOCALE: str = "en-US"
    TAX_RATE: Decimal = Decimal("0.08")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("75.00")
    REDUCED_SHIPPING_THRESHOLD: Decimal = Decimal("25.00")
    REDUCED_SHIPPING_FEE: Decimal = Decimal("5.00")
    STANDARD_SHIPPING_FEE: Decimal = Decimal("10.00")

    # Inventory
    LOW_STOCK_THRESHOLD: int = 5
    MAX_LINE_QUANTITY: int = 999

    # Checkout sessions
    CHECKOUT_SESSION_TTL_MINUTES: int = 30
    CHECKOUT_CLEANUP_ENABLED: bool = True
    CHECKOUT_CLEANUP_INTERVAL_MINUTES: int = 5

    # Collaborator timeouts and read retries
    INVENTORY_TIMEOUT_SECONDS: float = 2.0
    PAYMENT_TIMEOUT_SECONDS: float = 10.0
    READ_RETRY_ATTEMPTS: int = 3
    READ_RETRY_BASE_DELAY: float = 0.1

    # Product search cache
    SEARCH_CACHE_TTL_SECONDS: int = 180
    SEARCH_CACHE_MAX_SIZE: int = 500

    @field_validator("TAX_RATE")
    @classmethod
    def validate_tax_rate(cls, v):
        if v < 0 or v >= 1:
            raise ValueError("TAX_RATE must be in [0, 1)")
        return v

    @field_validator("LOW_STOCK_THRESHOLD", "MAX_LINE_QUANTITY", "CHECKOUT_SESSION_TTL_MINUTES")
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v


settings = Settings()

if settings.DEBUG and settings.ENVIRONMENT == "production":
    logger.warning("DEBUG is enabled in a production environment")
