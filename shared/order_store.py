"""
Durable order store.

This module owns the order lifecycle: creating orders, reading them back, and
the conditional status transitions that make delivery exactly-once.

Design decisions:
- Every transition is a compare-and-set (UPDATE ... WHERE status = 'pending');
  the rowcount says whether this caller won
- Transition methods take the caller's Connection so the delivery
  coordinator can combine them with inventory changes in one transaction
- Read methods open their own short-lived connection
"""

import json
import logging
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from shared.database import Database, get_database, orders
from shared.models import (
    Order,
    OrderKind,
    OrderStatus,
    SubscriptionConfig,
    from_epoch_ms,
    from_micros,
    to_epoch_ms,
    to_micros,
)

logger = logging.getLogger("order_store")


def _row_to_order(row) -> Order:
    subscription = None
    if row.subscription_json:
        subscription = SubscriptionConfig.model_validate(json.loads(row.subscription_json))
    return Order(
        id=row.id,
        kind=row.kind,
        product_id=row.product_id,
        session_id=row.session_id,
        amount=from_micros(row.amount_micros),
        wallet_address=row.wallet_address,
        payment_url=row.payment_url,
        status=row.status,
        created_at=from_epoch_ms(row.created_at_ms),
        payment_tx=row.payment_tx,
        delivered_code=row.delivered_code,
        expires_at=from_epoch_ms(row.expires_at_ms) if row.expires_at_ms is not None else None,
        subscription=subscription,
    )


class OrderStore:
    """
    Order persistence and lifecycle transitions.

    Example:
        store = OrderStore(db)
        store.add(order)

        with db.begin() as conn:
            if store.mark_paid(conn, order.id, "tx-1", expires_at):
                ...  # this caller activated the subscription
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    # =========================================================================
    # Creation and reads
    # =========================================================================

    def add(self, order: Order) -> Order:
        """Persist a new order."""
        subscription_json = None
        if order.subscription is not None:
            subscription_json = order.subscription.model_dump_json(by_alias=True)

        with self.db.begin() as conn:
            conn.execute(
                orders.insert().values(
                    id=order.id,
                    kind=OrderKind(order.kind).value,
                    product_id=order.product_id,
                    session_id=order.session_id,
                    amount_micros=to_micros(order.amount),
                    wallet_address=order.wallet_address,
                    payment_url=order.payment_url,
                    status=OrderStatus(order.status).value,
                    created_at_ms=order.created_at_ms,
                    payment_tx=order.payment_tx,
                    delivered_code=order.delivered_code,
                    expires_at_ms=to_epoch_ms(order.expires_at) if order.expires_at else None,
                    subscription_json=subscription_json,
                )
            )
        logger.info(f"Order {order.id} stored ({order.kind}, amount {order.amount})")
        return order

    def get(self, order_id: str, conn: Optional[Connection] = None) -> Optional[Order]:
        """Get an order by ID, optionally inside an open transaction."""
        query = sa.select(orders).where(orders.c.id == order_id)
        if conn is not None:
            row = conn.execute(query).first()
        else:
            with self.db.connect() as own:
                row = own.execute(query).first()
        return _row_to_order(row) if row is not None else None

    def find_live_for_session(
        self,
        session_id: str,
        since: datetime,
        product_id: Optional[int] = None,
    ) -> Optional[Order]:
        """
        Most recent pending order for a browsing session created at or after `since`.

        Backs the one-active-order-per-session rule of the card flow.
        """
        query = (
            sa.select(orders)
            .where(orders.c.session_id == session_id)
            .where(orders.c.status == OrderStatus.PENDING.value)
            .where(orders.c.created_at_ms >= to_epoch_ms(since))
            .order_by(orders.c.created_at_ms.desc())
            .limit(1)
        )
        if product_id is not None:
            query = query.where(orders.c.product_id == product_id)
        with self.db.connect() as conn:
            row = conn.execute(query).first()
        return _row_to_order(row) if row is not None else None

    def live_amounts(self, since: datetime) -> set[int]:
        """Expected amounts (micro-units) of pending orders created at or after `since`."""
        query = (
            sa.select(orders.c.amount_micros)
            .where(orders.c.status == OrderStatus.PENDING.value)
            .where(orders.c.created_at_ms >= to_epoch_ms(since))
        )
        with self.db.connect() as conn:
            return {row.amount_micros for row in conn.execute(query)}

    # =========================================================================
    # Transitions (run inside the caller's transaction)
    # =========================================================================

    def mark_delivered(
        self,
        conn: Connection,
        order_id: str,
        payment_tx: str,
        code: Optional[str] = None,
    ) -> bool:
        """Move a pending card order to DELIVERED. Returns False if it was not pending."""
        result = conn.execute(
            orders.update()
            .where(orders.c.id == order_id)
            .where(orders.c.status == OrderStatus.PENDING.value)
            .values(
                status=OrderStatus.DELIVERED.value,
                payment_tx=payment_tx,
                delivered_code=code,
            )
        )
        return result.rowcount == 1

    def attach_code(self, conn: Connection, order_id: str, code: str) -> None:
        """Record the code handed to a delivered order."""
        conn.execute(orders.update().where(orders.c.id == order_id).values(delivered_code=code))

    def mark_paid(
        self,
        conn: Connection,
        order_id: str,
        payment_tx: str,
        expires_at: datetime,
    ) -> bool:
        """Move a pending subscription order to PAID. Returns False if it was not pending."""
        result = conn.execute(
            orders.update()
            .where(orders.c.id == order_id)
            .where(orders.c.status == OrderStatus.PENDING.value)
            .values(
                status=OrderStatus.PAID.value,
                payment_tx=payment_tx,
                expires_at_ms=to_epoch_ms(expires_at),
            )
        )
        return result.rowcount == 1

    def expire_stale(self, created_before: datetime) -> int:
        """
        Mark pending orders created before `created_before` as EXPIRED.

        Returns the number of orders swept.
        """
        with self.db.begin() as conn:
            result = conn.execute(
                orders.update()
                .where(orders.c.status == OrderStatus.PENDING.value)
                .where(orders.c.created_at_ms < to_epoch_ms(created_before))
                .values(status=OrderStatus.EXPIRED.value)
            )
        swept = result.rowcount
        if swept:
            logger.info(f"Expired {swept} stale pending orders")
        return swept
