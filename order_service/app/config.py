import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


class Settings:
    """Runtime configuration, read from environment variables."""

    def __init__(self):
        # Database connection string (SQLAlchemy URL).
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./orders.db")

        # Payment gateway credentials and endpoints.
        self.mp_access_token = _optional("MP_ACCESS_TOKEN")
        self.mp_public_key = _optional("MP_PUBLIC_KEY")  # Handed to browsers to tokenize cards.
        self.mp_api_base_url = os.getenv("MP_API_BASE_URL", "https://api.mercadopago.com")
        self.mp_webhook_secret = _optional("MP_WEBHOOK_SECRET")
        self.mp_notification_url = _optional("MP_NOTIFICATION_URL")
        self.gateway_timeout_seconds = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

        # 0 disables the signature age check.
        self.webhook_tolerance_seconds = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "0"))

        # Flat-rate shipping rule.
        self.shipping_fee = Decimal(os.getenv("SHIPPING_FEE", "10.00"))
        self.free_shipping_threshold = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "100"))

        # Event broker. Unset means events are only logged.
        self.rabbitmq_host = _optional("RABBITMQ_HOST")

        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def gateway_configured(self) -> bool:
        return self.mp_access_token is not None


@lru_cache
def get_settings() -> Settings:
    """FastAPI dependency returning the process-wide settings."""
    return Settings()
