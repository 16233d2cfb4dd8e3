"""Runtime configuration for storefront.

Values come from environment variables; every setting has a development
default so the server and CLI start without any configuration.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ValidationError

# Local data directory within the storefront project
# Can be overridden via STOREFRONT_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"
DATA_DIR = Path(os.environ.get("STOREFRONT_DATA_DIR", _default_data_dir))
DATABASE_FILE = "storefront.db"

DEFAULT_VNPAY_URL = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Application settings."""

    database_url: str = f"sqlite:///{DATA_DIR / DATABASE_FILE}"
    currency: str = "USD"
    frontend_url: str = "http://localhost:3002"
    admin_api_key: str = ""
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_url: str = DEFAULT_VNPAY_URL
    vnpay_return_url: str = "http://localhost:3002/checkout/payment/vnpay-return"
    vnpay_utc_offset_hours: int = 7
    vnpay_expire_minutes: int = 15
    low_stock_threshold: int = 10
    log_level: str = "INFO"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def vnpay_configured(self) -> bool:
        return bool(self.vnpay_tmn_code and self.vnpay_hash_secret)

    def warn_missing_credentials(self) -> None:
        """Log a warning for each payment gateway that has no credentials."""
        if not self.stripe_configured:
            logger.warning("STRIPE_SECRET_KEY not set; Stripe payments will fail")
        if not self.stripe_webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not set; Stripe webhooks will be rejected")
        if not self.vnpay_configured:
            logger.warning("VNPay credentials not set; VNPay payments will fail")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got '{raw}'", field=name) from None


def load_settings() -> Settings:
    """Build Settings from the process environment."""
    defaults = Settings()
    return Settings(
        database_url=os.environ.get("STOREFRONT_DATABASE_URL", defaults.database_url),
        currency=os.environ.get("STOREFRONT_CURRENCY", defaults.currency),
        frontend_url=os.environ.get("STOREFRONT_FRONTEND_URL", defaults.frontend_url),
        admin_api_key=os.environ.get("STOREFRONT_ADMIN_API_KEY", ""),
        stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
        stripe_publishable_key=os.environ.get("STRIPE_PUBLISHABLE_KEY", ""),
        stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
        stripe_webhook_tolerance=_env_int(
            "STRIPE_WEBHOOK_TOLERANCE", defaults.stripe_webhook_tolerance
        ),
        vnpay_tmn_code=os.environ.get("VNPAY_TMN_CODE", ""),
        vnpay_hash_secret=os.environ.get("VNPAY_HASH_SECRET", ""),
        vnpay_url=os.environ.get("VNPAY_URL", defaults.vnpay_url),
        vnpay_return_url=os.environ.get("VNPAY_RETURN_URL", defaults.vnpay_return_url),
        vnpay_utc_offset_hours=_env_int(
            "VNPAY_UTC_OFFSET_HOURS", defaults.vnpay_utc_offset_hours
        ),
        vnpay_expire_minutes=_env_int("VNPAY_EXPIRE_MINUTES", defaults.vnpay_expire_minutes),
        low_stock_threshold=_env_int(
            "STOREFRONT_LOW_STOCK_THRESHOLD", defaults.low_stock_threshold
        ),
        log_level=os.environ.get("STOREFRONT_LOG_LEVEL", defaults.log_level),
    )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
