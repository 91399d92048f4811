"""
Payment pipeline configuration, read from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

logger = structlog.get_logger().bind(component="settings")

DAY = 24 * 60 * 60


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


@dataclass
class Settings:
    """Runtime configuration. Build with `Settings.from_env()`; tests pass fields directly."""

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300
    currency: str = "usd"

    # Storefront
    base_url: str = "http://localhost:3000"
    fallback_unit_price: float = 0.99
    payment_sync_limit: int = 5

    # Cache
    redis_url: Optional[str] = None
    ttl_customer_id: int = 30 * DAY
    ttl_payment_data: int = DAY
    ttl_checkout_session: int = 60 * 60
    ttl_webhook_event: int = DAY
    ttl_delivery_receipt: int = 30 * DAY

    # Minecraft server command API
    mc_server_host: str = "localhost"
    mc_server_port: int = 8080
    mc_server_api_key: str = ""
    mc_command_timeout: float = 10.0

    # Server
    environment: str = "development"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            stripe_webhook_tolerance=_env_int("STRIPE_WEBHOOK_TOLERANCE", "300"),
            currency=os.getenv("STORE_CURRENCY", "usd").lower(),
            base_url=os.getenv("APP_BASE_URL") or os.getenv("NEXTAUTH_URL") or "http://localhost:3000",
            fallback_unit_price=_env_float("FALLBACK_UNIT_PRICE", "0.99"),
            payment_sync_limit=_env_int("PAYMENT_SYNC_LIMIT", "5"),
            redis_url=os.getenv("REDIS_URL") or None,
            mc_server_host=os.getenv("MC_SERVER_HOST", "localhost"),
            mc_server_port=_env_int("MC_SERVER_PORT", "8080"),
            mc_server_api_key=os.getenv("MC_SERVER_API_KEY", ""),
            mc_command_timeout=_env_float("MC_COMMAND_TIMEOUT", "10.0"),
            environment=os.getenv("ENV", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", "8000"),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def build_url(self, path: str) -> str:
        base = self.base_url[:-1] if self.base_url.endswith("/") else self.base_url
        normalized = path if path.startswith("/") else f"/{path}"
        return f"{base}{normalized}"

    def check_stripe_keys(self) -> bool:
        """Warn about test/live key mix-ups. Returns False when the key looks wrong."""
        key = self.stripe_secret_key
        is_live = key.startswith("sk_live_")
        is_test = key.startswith("sk_test_")

        if not is_live and not is_test:
            logger.error("stripe_key_invalid_format")
            return False
        if self.is_production and not is_live:
            logger.warning("stripe_test_key_in_production")
            return False
        if not self.is_production and is_live:
            logger.warning("stripe_live_key_outside_production", environment=self.environment)
            return False
        return True
