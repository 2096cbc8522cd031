"""
Configuration management for the cart and stock-reservation core.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
from decimal import Decimal
from typing import Optional

import boto3

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Application configuration"""

    REGION: str = os.getenv("REGION", "ap-southeast-2")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = _env_bool("REDIS_SSL", "false")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    # Pricing
    CURRENCY: str = os.getenv("CURRENCY", "USD")
    TAX_RATE: Decimal = Decimal(os.getenv("TAX_RATE", "0.08"))
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "100"))

    # Cart settings
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "100"))
    RESERVATION_TTL_SECONDS: int = int(os.getenv("RESERVATION_TTL_SECONDS", str(15 * 60)))
    ABANDONMENT_MINUTES: int = int(os.getenv("ABANDONMENT_MINUTES", "60"))
    EMPTY_CART_TTL_SECONDS: int = int(os.getenv("EMPTY_CART_TTL_SECONDS", str(24 * 60 * 60)))
    GUEST_CART_TTL_SECONDS: int = int(os.getenv("GUEST_CART_TTL_SECONDS", str(30 * 24 * 60 * 60)))
    CART_CACHE_TTL_SECONDS: int = int(os.getenv("CART_CACHE_TTL_SECONDS", "300"))
    DELIVERY_BUSINESS_DAYS: int = int(os.getenv("DELIVERY_BUSINESS_DAYS", "5"))

    @classmethod
    def redis_url(cls) -> str:
        """Build the connection URL, rediss:// when TLS is on"""
        scheme = "rediss" if cls.REDIS_SSL else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])

            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
            # Managed endpoints require encryption in transit
            cls.REDIS_SSL = True
        except Exception as e:
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")
