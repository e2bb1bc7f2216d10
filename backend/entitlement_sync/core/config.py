"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.

Settings are built once by ``get_settings()`` (or passed explicitly to
``create_app``) and the derived per-component config objects are handed to
each component at startup.
"""

import json
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

from entitlement_sync.modules.billing.models import PlanTier


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Entitlement Sync API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: Optional[str] = None
    LOG_JSON: bool = True

    # Database - REQUIRED
    DATABASE_URL: str

    # Redis (Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # CORS
    CORS_ORIGINS: list[str] = []

    # Stripe - REQUIRED for webhook verification
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str
    FRONTEND_URL: str = "http://localhost:3000"

    # Price reference -> plan tier, e.g. {"price_123": "monthly"}
    PRICE_TIER_MAP: dict[str, PlanTier] = {}

    # Webhook verification
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    CLOCK_SKEW_SECONDS: int = 60

    # Reconciliation
    RECONCILE_MAX_ATTEMPTS: int = 3
    RECONCILE_BACKOFF_SECONDS: float = 0.05
    STORE_TIMEOUT_SECONDS: float = 5.0
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    LEDGER_RETENTION_DAYS: int = 90
    CANCELED_GRACE_ACCESS: bool = False

    @field_validator("PRICE_TIER_MAP", mode="before")
    @classmethod
    def parse_price_tier_map(cls, v):
        """Accept the mapping as a JSON string and reject the ``none`` tier."""
        if isinstance(v, str):
            v = json.loads(v) if v.strip() else {}
        for price_ref, tier in dict(v).items():
            if PlanTier(tier) == PlanTier.NONE:
                raise ValueError(f"Price {price_ref} cannot map to tier 'none'")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@dataclass(frozen=True)
class BillingConfig:
    """Everything the webhook pipeline needs, fixed at startup."""

    signing_secret: str
    price_tiers: dict[str, PlanTier] = field(default_factory=dict)
    tolerance_seconds: int = 300
    clock_skew_seconds: int = 60
    max_attempts: int = 3
    backoff_seconds: float = 0.05
    store_timeout_seconds: float = 5.0
    provider_timeout_seconds: float = 10.0
    ledger_retention_days: int = 90
    canceled_grace_access: bool = False
    stripe_api_key: str = ""
    frontend_url: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingConfig":
        return cls(
            signing_secret=settings.STRIPE_WEBHOOK_SECRET,
            price_tiers=dict(settings.PRICE_TIER_MAP),
            tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
            clock_skew_seconds=settings.CLOCK_SKEW_SECONDS,
            max_attempts=settings.RECONCILE_MAX_ATTEMPTS,
            backoff_seconds=settings.RECONCILE_BACKOFF_SECONDS,
            store_timeout_seconds=settings.STORE_TIMEOUT_SECONDS,
            provider_timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            ledger_retention_days=settings.LEDGER_RETENTION_DAYS,
            canceled_grace_access=settings.CANCELED_GRACE_ACCESS,
            stripe_api_key=settings.STRIPE_SECRET_KEY,
            frontend_url=settings.FRONTEND_URL,
        )

    def price_for_tier(self, tier: PlanTier) -> Optional[str]:
        """Reverse lookup used when opening a checkout session."""
        for price_ref, mapped in self.price_tiers.items():
            if mapped == tier:
                return price_ref
        return None


@dataclass(frozen=True)
class AuthConfig:
    """Token settings for the identity gate."""

    secret_key: str
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    algorithm: str = "HS256"

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthConfig":
        return cls(
            secret_key=settings.SECRET_KEY,
            access_token_expire_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
            refresh_token_expire_days=settings.REFRESH_TOKEN_EXPIRE_DAYS,
        )


@lru_cache
def get_settings() -> Settings:
    """Load settings from the environment once per process."""
    return Settings()
