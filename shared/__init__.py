"""
Shared infrastructure for the card shop.

This package contains the pieces both the reconciliation engine and the HTTP
surface build on:
- Domain models (Product, Order, Transfer, NotificationSettings, etc.)
- Configuration and the relational store (orders, inventory, settings)
- Notification transports (push, email) and message templates
"""

from shared.config import ShopConfig, get_config, reset_config
from shared.models import (
    CheckResult,
    NotificationSettings,
    Order,
    OrderKind,
    OrderStatus,
    OrderSummary,
    Product,
    SubscriptionConfig,
    TextReplace,
    Transfer,
)
from shared.database import Database, get_database, reset_database
from shared.order_store import OrderStore
from shared.inventory import InventoryLedger
from shared.settings_store import SettingsStore
from shared.channels import EmailChannel, NotificationChannels, NotificationResult, PushChannel

__all__ = [
    "ShopConfig",
    "get_config",
    "reset_config",
    "CheckResult",
    "NotificationSettings",
    "Order",
    "OrderKind",
    "OrderStatus",
    "OrderSummary",
    "Product",
    "SubscriptionConfig",
    "TextReplace",
    "Transfer",
    "Database",
    "get_database",
    "reset_database",
    "OrderStore",
    "InventoryLedger",
    "SettingsStore",
    "EmailChannel",
    "NotificationChannels",
    "NotificationResult",
    "PushChannel",
]
