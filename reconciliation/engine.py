"""
Order service: creation and payment checks.

This is the orchestration layer behind the HTTP surface. It owns no state of
its own; everything durable lives in the order store, the inventory ledger
and the settings store.

Order creation:
    validate -> (card) reuse the session's live order or check stock
    -> mint a disambiguated amount -> payment intent -> persist
    -> order-created notification

Payment check (called by every poll):
    terminal? answer from the store
    -> fetch the feed (outside any transaction) -> first matching transfer
    -> delivery coordinator commits -> order-paid notification

Design decisions:
- Collaborators are injected, with config-driven defaults, so tests can swap
  the feed, the gateway and the transports
- A failed payment intent means no order is stored
- The stored order is re-read on every check; nothing is cached in-process
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.config import ShopConfig, get_config
from shared.database import Database, get_database
from shared.errors import NotFoundError, SimulatedPaymentDisabledError, ValidationError
from shared.inventory import InventoryLedger
from shared.models import (
    CheckResult,
    Order,
    OrderKind,
    OrderStatus,
    OrderSummary,
    SubscriptionConfig,
    TextReplace,
    Transfer,
    to_epoch_ms,
    to_micros,
    utc_now,
)
from shared.order_store import OrderStore
from shared.settings_store import SettingsStore

from reconciliation.activation_log import ActivationLog
from reconciliation.amounts import AmountDisambiguator
from reconciliation.delivery import DeliveryCoordinator, DeliveryResult
from reconciliation.dispatcher import NotificationDispatcher
from reconciliation.feed import TransactionFeedClient
from reconciliation.matcher import ReconciliationMatcher
from reconciliation.payment_gateway import PaymentGatewayClient

logger = logging.getLogger("order_service")

CARD_ORDER_PREFIX = "C"
SUBSCRIPTION_ORDER_PREFIX = "TG"
SUBSCRIPTION_TITLE = "Channel forwarding subscription"
TEST_TX_PREFIX = "TEST_TX_"


def generate_order_id(prefix: str, now: Optional[datetime] = None) -> str:
    """Prefix + epoch millis + 6 random hex digits, e.g. C1700000000000a3f9c1."""
    return f"{prefix}{to_epoch_ms(now or utc_now())}{secrets.token_hex(3)}"


def summarize(order: Order, title: Optional[str] = None) -> OrderSummary:
    return OrderSummary(
        order_id=order.id,
        kind=order.kind,
        amount=order.amount,
        title=title or "unknown",
        subscription=order.subscription,
    )


def result_for(order: Order) -> CheckResult:
    """What a poll sees for an order in its current state."""
    if order.status == OrderStatus.DELIVERED:
        return CheckResult(status=OrderStatus.DELIVERED, code=order.delivered_code)
    return CheckResult(status=order.status)


class OrderService:
    """
    Creates orders and reconciles them against the transaction feed.

    Example:
        service = OrderService()
        order = service.create_card_order(product_id=1, session_id="s-1")
        ...
        result = service.check_order(order.id)   # CheckResult(status="delivered", code="...")
    """

    def __init__(
        self,
        config: Optional[ShopConfig] = None,
        db: Optional[Database] = None,
        order_store: Optional[OrderStore] = None,
        inventory: Optional[InventoryLedger] = None,
        settings_store: Optional[SettingsStore] = None,
        amounts: Optional[AmountDisambiguator] = None,
        gateway: Optional[PaymentGatewayClient] = None,
        feed: Optional[TransactionFeedClient] = None,
        matcher: Optional[ReconciliationMatcher] = None,
        coordinator: Optional[DeliveryCoordinator] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        activation_log: Optional[ActivationLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or get_config()
        self.db = db or get_database()
        self.order_store = order_store or OrderStore(self.db)
        self.inventory = inventory or InventoryLedger(self.db)
        self.settings_store = settings_store or SettingsStore(self.db)
        self.amounts = amounts or AmountDisambiguator()
        self.gateway = gateway or PaymentGatewayClient(
            api_url=self.config.payment_api_url,
            token=self.config.payment_api_token.get_secret_value(),
            notify_url=self.config.notify_url,
            redirect_url=self.config.redirect_url,
            timeout=self.config.payment_timeout_seconds,
        )
        self.feed = feed or TransactionFeedClient(
            url=self.config.feed_url,
            api_key=self.config.feed_api_key.get_secret_value(),
            timeout=self.config.feed_timeout_seconds,
        )
        self.matcher = matcher or ReconciliationMatcher(
            window_ms=self.config.match_window_seconds * 1000,
            tolerance=self.config.match_tolerance,
        )
        self.coordinator = coordinator or DeliveryCoordinator(
            db=self.db,
            order_store=self.order_store,
            inventory=self.inventory,
            subscription_term=timedelta(days=self.config.subscription_days),
        )
        self.dispatcher = dispatcher or NotificationDispatcher(
            settings_store=self.settings_store,
            max_workers=self.config.notification_workers,
            timeout=self.config.notification_timeout_seconds,
        )
        self.activation_log = activation_log or ActivationLog(self.config.activation_log_path)
        self.clock = clock or utc_now

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.config.match_window_seconds)

    @property
    def expiry_cutoff(self) -> timedelta:
        """Age after which a pending order can no longer be paid, feed lag included."""
        return self.window + timedelta(seconds=self.config.expiry_grace_seconds)

    # =========================================================================
    # Order creation
    # =========================================================================

    def create_card_order(self, product_id, session_id: str) -> Order:
        """
        Create (or reuse) a pending card order for a browsing session.

        Raises:
            ValidationError: missing input or product sold out
            NotFoundError: unknown product
            PaymentGatewayError: payment intent could not be created
        """
        if product_id in (None, "") or not session_id:
            raise ValidationError("Missing cardId or sessionId")
        try:
            product_id = int(product_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid cardId: {product_id!r}")

        product = self.inventory.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Card not found: {product_id}")

        now = self.clock()
        live = self.order_store.find_live_for_session(session_id, since=now - self.window, product_id=product_id)
        if live is not None:
            logger.info(f"Session {session_id} already has live order {live.id}; reusing it")
            return live

        if product.available_count <= 0:
            raise ValidationError("No cards available")

        amount = self.amounts.derive_avoiding(product.price, self.order_store.live_amounts(since=now - self.window))
        order = self._open_order(
            Order(
                id=generate_order_id(CARD_ORDER_PREFIX, now),
                kind=OrderKind.CARD,
                product_id=product_id,
                session_id=session_id,
                amount=amount,
                created_at=now,
            )
        )
        self.dispatcher.notify_created(summarize(order, product.title))
        return order

    def create_subscription_order(
        self,
        source_channel: str,
        target_channel: str,
        text_replaces: Optional[list[TextReplace]] = None,
        keywords: str = "",
        telegram_id: str = "",
        email: str = "",
    ) -> Order:
        """
        Create a pending order for the channel-forwarding subscription.

        Raises:
            ValidationError: channels missing, or neither contact given
            PaymentGatewayError: payment intent could not be created
        """
        source_channel = (source_channel or "").strip()
        target_channel = (target_channel or "").strip()
        telegram_id = (telegram_id or "").strip()
        email = (email or "").strip()
        if not source_channel or not target_channel:
            raise ValidationError("Source and target channels are required")
        if not telegram_id and not email:
            raise ValidationError("A Telegram ID or an email address is required")

        subscription = SubscriptionConfig(
            source_channel=source_channel,
            target_channel=target_channel,
            text_replaces=[r for r in (text_replaces or []) if r.from_],
            keywords=keywords or "",
            telegram_id=telegram_id,
            email=email,
        )
        now = self.clock()
        amount = self.amounts.derive_avoiding(
            self.config.subscription_price,
            self.order_store.live_amounts(since=now - self.window),
        )
        order = self._open_order(
            Order(
                id=generate_order_id(SUBSCRIPTION_ORDER_PREFIX, now),
                kind=OrderKind.SUBSCRIPTION,
                amount=amount,
                created_at=now,
                subscription=subscription,
            )
        )
        self.dispatcher.notify_created(summarize(order, SUBSCRIPTION_TITLE))
        return order

    def _open_order(self, order: Order) -> Order:
        """Create the payment intent, then persist. Nothing is stored if the intent fails."""
        intent = self.gateway.create_intent(order.id, order.amount)
        if intent.actual_amount is not None and to_micros(intent.actual_amount) != to_micros(order.amount):
            logger.warning(
                f"Payment service quoted {intent.actual_amount} for {order.id}; "
                f"keeping disambiguated amount {order.amount}"
            )
        order = order.model_copy(update={
            "wallet_address": intent.wallet_address,
            "payment_url": intent.payment_url,
        })
        self.order_store.add(order)
        logger.info(f"Order {order.id} created: {order.kind} for {order.amount} USDT")
        return order

    # =========================================================================
    # Reads
    # =========================================================================

    def get_order(self, order_id: str, kind: Optional[OrderKind] = None) -> Order:
        order = self.order_store.get(order_id)
        if order is None or (kind is not None and order.kind != kind):
            raise NotFoundError(f"Order not found: {order_id}")
        return order

    def find_session_order(self, session_id: str) -> Optional[Order]:
        """The session's live pending card order, if it has one."""
        if not session_id:
            raise ValidationError("Missing sessionId")
        return self.order_store.find_live_for_session(session_id, since=self.clock() - self.window)

    def list_cards(self):
        return self.inventory.list_available()

    # =========================================================================
    # Payment check
    # =========================================================================

    def check_order(self, order_id: str, kind: Optional[OrderKind] = None) -> CheckResult:
        """
        One reconciliation attempt for an order.

        Terminal orders answer from the store without touching the feed.
        A matched transfer is committed through the delivery coordinator;
        if the product ran out of codes the answer stays pending.
        """
        order = self.get_order(order_id, kind)
        if order.is_terminal():
            return result_for(order)

        grace_ms = self.config.expiry_grace_seconds * 1000
        if self.matcher.window_closed(order, to_epoch_ms(self.clock()) - grace_ms):
            logger.debug(f"Order {order_id} is past its matching window; not polling the feed")
            return CheckResult(status=OrderStatus.PENDING)

        transfer = self.matcher.find_match(order, self.feed.fetch_recent())
        if transfer is None:
            return CheckResult(status=OrderStatus.PENDING)
        return self._settle(order, transfer)

    def simulate_payment(self, order_id: str, kind: Optional[OrderKind] = None) -> CheckResult:
        """
        Commit a synthetic matching transfer (test mode only).

        Goes through the same coordinator and notifications as a real payment.
        """
        if not self.config.test_mode:
            raise SimulatedPaymentDisabledError("Test mode is not enabled")
        order = self.get_order(order_id, kind=kind)
        if order.is_terminal():
            return result_for(order)

        now = self.clock()
        transfer = Transfer(
            value_minor=to_micros(order.amount),
            timestamp_ms=max(to_epoch_ms(now), order.created_at_ms),
            tx_id=f"{TEST_TX_PREFIX}{to_epoch_ms(now)}",
            to_address=order.wallet_address or None,
        )
        logger.info(f"[TEST] Simulating payment {transfer.tx_id} for {order_id}")
        return self._settle(order, transfer)

    def _settle(self, order: Order, transfer: Transfer) -> CheckResult:
        result: DeliveryResult = self.coordinator.commit(order, transfer)
        if not result.delivered:
            return CheckResult(status=OrderStatus.PENDING)

        stored = result.order or order
        if result.won:
            self._after_payment(stored)
        return result_for(stored)

    def _after_payment(self, order: Order) -> None:
        title = SUBSCRIPTION_TITLE
        if order.kind == OrderKind.CARD and order.product_id is not None:
            product = self.inventory.get_product(order.product_id)
            title = product.title if product else "unknown"
        elif order.kind == OrderKind.SUBSCRIPTION:
            self.activation_log.append(order)
        self.dispatcher.notify_paid(summarize(order, title))

    # =========================================================================
    # Maintenance
    # =========================================================================

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Mark pending orders older than the matching window plus grace as expired."""
        now = now or self.clock()
        swept = self.order_store.expire_stale(created_before=now - self.expiry_cutoff)
        logger.info(f"Expiry sweep finished: {swept} orders expired")
        return swept

    def shutdown(self) -> None:
        self.dispatcher.shutdown(wait=False)
