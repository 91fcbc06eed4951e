"""
Domain models for the card shop.

These models describe what is sold (card products and the channel-forwarding
subscription), the orders placed for them, and the transfers observed on the
payment rail.

Design decisions:
- Using Pydantic for validation and serialization
- Money is Decimal in the domain and integer micro-units (6 decimal places,
  the same fixed point the TRC20 feed uses) at the storage boundary
- Timestamps are timezone-aware UTC in the domain and epoch milliseconds at
  the storage boundary, so window checks are exact integer comparisons
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


MICROS_PER_UNIT = 1_000_000
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Conversions
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_micros(amount: Decimal) -> int:
    """Convert a token amount to integer micro-units (exact for up to 6 decimals)."""
    return int((Decimal(amount) * MICROS_PER_UNIT).to_integral_value())


def from_micros(value: int) -> Decimal:
    amount = Decimal(value).scaleb(-6)
    if amount == amount.to_integral_value():
        return amount.quantize(Decimal(1))
    return amount.normalize()


def format_amount(amount: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros (199.037, 200, 19.9)."""
    return f"{Decimal(amount).normalize():f}"


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


# =============================================================================
# Enums - Status values used across the domain
# =============================================================================

class OrderStatus(str, Enum):
    """
    Order lifecycle states.

    Card orders go PENDING -> DELIVERED, subscription orders go
    PENDING -> PAID. EXPIRED is only ever set by the expiry sweep.
    """
    PENDING = "pending"           # Waiting for a matching transfer
    PAID = "paid"                 # Subscription activated
    DELIVERED = "delivered"       # Card code handed out
    EXPIRED = "expired"           # Window elapsed, swept server-side


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.DELIVERED, OrderStatus.EXPIRED})


class OrderKind(str, Enum):
    """What an order buys."""
    CARD = "card"
    SUBSCRIPTION = "subscription"


# =============================================================================
# Core Domain Models
# =============================================================================

class Product(BaseModel):
    """
    A card product: a finite pool of access codes sold at a fixed price.

    `codes` holds the undelivered code values in delivery order. It is only
    populated by inventory reads; storefront listings leave it empty.
    """
    id: int = Field(..., description="Product identifier")
    title: str = Field(..., description="Display title")
    price: Decimal = Field(..., ge=0, description="Base unit price in USDT")
    available_count: int = Field(..., ge=0, description="Remaining undelivered codes")
    created_at: datetime = Field(default_factory=utc_now)
    codes: list[str] = Field(default_factory=list)


class TextReplace(BaseModel):
    """One text-replacement rule applied to forwarded messages."""
    from_: str = Field(..., alias="from")
    to: str = Field(default="")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionConfig(BaseModel):
    """
    Channel-forwarding service configuration carried by a subscription order.

    At least one contact (telegram_id or email) must be present; that rule is
    enforced at order creation, not here, so stored orders always load.
    """
    source_channel: str = Field(..., min_length=1, description="Channel to listen on")
    target_channel: str = Field(..., min_length=1, description="Channel to forward to")
    text_replaces: list[TextReplace] = Field(default_factory=list)
    keywords: str = Field(default="", description="Keyword denylist")
    telegram_id: str = Field(default="")
    email: str = Field(default="")

    def describe_replaces(self, separator: str = "; ") -> str:
        if not self.text_replaces:
            return "none"
        return separator.join(f"{r.from_} -> {r.to}" for r in self.text_replaces)


class Order(BaseModel):
    """
    An order for a card or for the forwarding subscription.

    `amount` is the disambiguated amount the payer is told to send. The order
    matches at most one transfer; after that its status is terminal and
    `payment_tx` records which transfer paid for it.
    """
    id: str = Field(..., description="Unique order identifier")
    kind: OrderKind = Field(..., description="What the order buys")
    product_id: Optional[int] = Field(default=None, description="Card product (card orders only)")
    session_id: Optional[str] = Field(default=None, description="Browsing session that placed the order")
    amount: Decimal = Field(..., gt=0, description="Expected payment amount")
    wallet_address: str = Field(default="", description="Receiving wallet address")
    payment_url: str = Field(default="")
    status: OrderStatus = Field(default=OrderStatus.PENDING)
    created_at: datetime = Field(default_factory=utc_now)
    payment_tx: Optional[str] = Field(default=None)
    delivered_code: Optional[str] = Field(default=None)
    expires_at: Optional[datetime] = Field(default=None, description="Subscription end (subscription only)")
    subscription: Optional[SubscriptionConfig] = Field(default=None)

    model_config = ConfigDict(use_enum_values=True)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def created_at_ms(self) -> int:
        return to_epoch_ms(self.created_at)


class Transfer(BaseModel):
    """A single inbound stablecoin transfer as reported by the explorer feed."""
    value_minor: int = Field(..., ge=0, description="Value in micro-units (6 decimals)")
    timestamp_ms: int = Field(..., ge=0, description="Block timestamp, epoch millis")
    tx_id: str = Field(..., min_length=1)
    to_address: Optional[str] = Field(default=None, description="Receiving address, when the feed reports it")

    @property
    def value(self) -> Decimal:
        return from_micros(self.value_minor)

    @property
    def timestamp(self) -> datetime:
        return from_epoch_ms(self.timestamp_ms)


# =============================================================================
# Notifications
# =============================================================================

class NotificationSettings(BaseModel):
    """
    Operator notification settings (singleton, edited from the admin surface).

    Each transport is active only when its required fields are filled in;
    the two toggles gate order-created and order-paid notifications
    independently.
    """
    server_chan_key: str = Field(default="", description="Push service SendKey")
    email_host: str = Field(default="")
    email_port: int = Field(default=465, gt=0, lt=65536)
    email_user: str = Field(default="")
    email_pass: str = Field(default="")
    email_to: str = Field(default="")
    notify_on_create: bool = Field(default=False)
    notify_on_paid: bool = Field(default=False)

    def push_enabled(self) -> bool:
        return bool(self.server_chan_key)

    def email_enabled(self) -> bool:
        return bool(self.email_host and self.email_user)


class OrderSummary(BaseModel):
    """The slice of an order that notifications are rendered from."""
    order_id: str
    kind: OrderKind
    amount: Decimal
    title: str = Field(default="unknown")
    subscription: Optional[SubscriptionConfig] = None

    model_config = ConfigDict(use_enum_values=True)


class CheckResult(BaseModel):
    """Outcome of one payment check, as returned to the poller."""
    status: OrderStatus
    code: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
