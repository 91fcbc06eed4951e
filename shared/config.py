"""
Runtime configuration for the card shop.

All values come from environment variables prefixed with ``CARDSHOP_`` (or a
``.env`` file in the working directory). Every field has a default so the
service starts in a local, SQLite-backed mode with no configuration at all.

Design decisions:
- Typed settings via pydantic-settings, validated once at startup
- Module-level cached instance, replaceable in tests via reset_config()
- Secrets are SecretStr so they never end up in logs or reprs
"""

from decimal import Decimal
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ShopConfig(BaseSettings):
    """Deployment configuration for the reconciliation engine and API."""

    model_config = SettingsConfigDict(
        env_prefix="CARDSHOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Persistence
    database_url: str = Field(default="sqlite:///cardshop.db")

    # Payment-intent collaborator
    payment_api_url: str = Field(
        default="https://pay.tg10000.com/api/v1/order/create-transaction"
    )
    payment_api_token: SecretStr = Field(default=SecretStr("Abc.12345"))
    notify_url: str = Field(default="http://pay.tg10000.com")
    redirect_url: str = Field(default="http://pay.tg10000.com")
    payment_timeout_seconds: float = Field(default=10.0, gt=0)

    # Transaction feed (TronGrid TRC20 transfers for the receiving address)
    feed_url: str = Field(default="")
    feed_api_key: SecretStr = Field(default=SecretStr(""))
    feed_timeout_seconds: float = Field(default=10.0, gt=0)

    # Matching rules
    match_window_seconds: int = Field(default=600, gt=0)
    match_tolerance: Decimal = Field(default=Decimal("0.001"), gt=0)
    subscription_price: Decimal = Field(default=Decimal("19.9"), gt=0)
    subscription_days: int = Field(default=31, gt=0)
    expiry_grace_seconds: int = Field(default=300, ge=0)

    # Notifications
    notification_workers: int = Field(default=4, ge=1)
    notification_timeout_seconds: float = Field(default=10.0, gt=0)
    activation_log_path: str = Field(default="data.txt")

    # Admin surface and test hooks
    admin_token: Optional[SecretStr] = Field(default=None)
    test_mode: bool = Field(default=False)


_default_config: Optional[ShopConfig] = None


def get_config() -> ShopConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _default_config
    if _default_config is None:
        _default_config = ShopConfig()
    return _default_config


def reset_config(config: Optional[ShopConfig] = None) -> Optional[ShopConfig]:
    """Replace the cached configuration (useful for testing)."""
    global _default_config
    _default_config = config
    return _default_config
