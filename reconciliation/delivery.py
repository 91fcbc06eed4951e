"""
Delivery coordinator.

The one place that changes an order and inventory together. For a matched
transfer it runs, in a single database transaction:

- card orders: pending -> delivered, record the transaction, claim the next
  code, decrement the product count
- subscription orders: pending -> paid, record the transaction, set the
  expiry to created_at + subscription term

Exactly-once comes from the compare-and-set on the order status: when two
polls race, one transition succeeds and the other sees rowcount 0, rolls
back, and returns whatever the winner stored. A sold-out product rolls the
whole transaction back so the order stays pending with nothing changed.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from shared.database import Database, get_database
from shared.inventory import InventoryLedger
from shared.models import Order, OrderKind, OrderStatus, Transfer
from shared.order_store import OrderStore

logger = logging.getLogger("delivery")

DEFAULT_SUBSCRIPTION_TERM = timedelta(days=31)


class _Rollback(Exception):
    """Aborts the delivery transaction without it being an error."""


class _LostRace(_Rollback):
    pass


class _SoldOut(_Rollback):
    pass


@dataclass
class DeliveryResult:
    """
    Outcome of a commit attempt.

    delivered:    the order is now terminal (by this call or a concurrent one)
    won:          this call performed the transition
    order:        the order as stored after the attempt
    code:         the card code handed out, if any
    """
    delivered: bool
    won: bool
    order: Optional[Order]
    code: Optional[str] = None


class DeliveryCoordinator:
    """Commits a matched transfer against an order atomically."""

    def __init__(
        self,
        db: Optional[Database] = None,
        order_store: Optional[OrderStore] = None,
        inventory: Optional[InventoryLedger] = None,
        subscription_term: timedelta = DEFAULT_SUBSCRIPTION_TERM,
    ):
        self.db = db or get_database()
        self.order_store = order_store or OrderStore(self.db)
        self.inventory = inventory or InventoryLedger(self.db)
        self.subscription_term = subscription_term

    def commit(self, order: Order, transfer: Transfer) -> DeliveryResult:
        if order.kind == OrderKind.CARD:
            return self._commit_card(order, transfer)
        return self._commit_subscription(order, transfer)

    def _commit_card(self, order: Order, transfer: Transfer) -> DeliveryResult:
        if order.product_id is None:
            logger.error(f"Card order {order.id} has no product; cannot deliver")
            return DeliveryResult(delivered=False, won=False, order=order)

        code: Optional[str] = None
        try:
            with self.db.begin() as conn:
                # The status update goes first: it takes the write lock and
                # decides the winner before any inventory is touched.
                if not self.order_store.mark_delivered(conn, order.id, transfer.tx_id):
                    raise _LostRace()
                code = self.inventory.pop_code(conn, order.product_id, order.id)
                if code is None:
                    raise _SoldOut()
                self.order_store.attach_code(conn, order.id, code)
        except _LostRace:
            return self._already_terminal(order)
        except _SoldOut:
            logger.error(
                f"Order {order.id} paid by {transfer.tx_id} but product {order.product_id} "
                f"has no codes left; leaving it pending"
            )
            return DeliveryResult(delivered=False, won=False, order=order)

        logger.info(f"Order {order.id} delivered (tx {transfer.tx_id})")
        stored = self.order_store.get(order.id)
        return DeliveryResult(delivered=True, won=True, order=stored, code=code)

    def _commit_subscription(self, order: Order, transfer: Transfer) -> DeliveryResult:
        expires_at = order.created_at + self.subscription_term
        with self.db.begin() as conn:
            won = self.order_store.mark_paid(conn, order.id, transfer.tx_id, expires_at)
        if not won:
            return self._already_terminal(order)

        logger.info(f"Subscription {order.id} paid (tx {transfer.tx_id}), expires {expires_at.isoformat()}")
        stored = self.order_store.get(order.id)
        return DeliveryResult(delivered=True, won=True, order=stored)

    def _already_terminal(self, order: Order) -> DeliveryResult:
        stored = self.order_store.get(order.id)
        if stored is None or stored.status == OrderStatus.PENDING:
            logger.warning(f"Order {order.id} transition lost but order is not terminal")
            return DeliveryResult(delivered=False, won=False, order=stored or order)
        logger.info(f"Order {order.id} already {stored.status}; returning stored result")
        return DeliveryResult(
            delivered=stored.status in (OrderStatus.DELIVERED, OrderStatus.PAID),
            won=False,
            order=stored,
            code=stored.delivered_code,
        )
