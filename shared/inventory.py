"""
Inventory ledger for card products.

A product's remaining stock is two things that must always agree: the
`available_count` column and the set of code rows not yet handed to an
order. This module is the only place that changes either.
"""

import logging
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from shared.database import Database, card_codes, get_database, products
from shared.models import Product, from_epoch_ms, from_micros, to_epoch_ms, to_micros, utc_now

logger = logging.getLogger("inventory")


def _row_to_product(row, codes: Optional[list[str]] = None) -> Product:
    return Product(
        id=row.id,
        title=row.title,
        price=from_micros(row.price_micros),
        available_count=row.available_count,
        created_at=from_epoch_ms(row.created_at_ms),
        codes=codes or [],
    )


class InventoryLedger:
    """
    Finite pool of codes per product.

    Codes are handed out in insertion order. `pop_code` must run inside the
    delivery transaction; everything else manages its own connection.
    """

    # Attempts at claiming a code before giving up; only a concurrent
    # claimer on another connection can make an attempt fail.
    MAX_CLAIM_ATTEMPTS = 3

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    # =========================================================================
    # Product management
    # =========================================================================

    def add_product(self, title: str, price: Decimal, codes: list[str]) -> Product:
        """Create a product stocked with the given codes."""
        values = [c.strip() for c in codes if c and c.strip()]
        with self.db.begin() as conn:
            result = conn.execute(
                products.insert().values(
                    title=title,
                    price_micros=to_micros(price),
                    available_count=len(values),
                    created_at_ms=to_epoch_ms(utc_now()),
                )
            )
            product_id = result.inserted_primary_key[0]
            if values:
                conn.execute(
                    card_codes.insert(),
                    [{"product_id": product_id, "value": v} for v in values],
                )
        logger.info(f"Product {product_id} '{title}' stocked with {len(values)} codes")
        return self.get_product(product_id, include_codes=True)

    def get_product(self, product_id: int, include_codes: bool = False) -> Optional[Product]:
        with self.db.connect() as conn:
            row = conn.execute(sa.select(products).where(products.c.id == product_id)).first()
            if row is None:
                return None
            codes = self._remaining_codes(conn, product_id) if include_codes else None
        return _row_to_product(row, codes)

    def list_available(self) -> list[Product]:
        """Products that still have at least one code, oldest first."""
        query = (
            sa.select(products)
            .where(products.c.available_count > 0)
            .order_by(products.c.id)
        )
        with self.db.connect() as conn:
            return [_row_to_product(row) for row in conn.execute(query)]

    def remaining_codes(self, product_id: int) -> list[str]:
        with self.db.connect() as conn:
            return self._remaining_codes(conn, product_id)

    def _remaining_codes(self, conn: Connection, product_id: int) -> list[str]:
        query = (
            sa.select(card_codes.c.value)
            .where(card_codes.c.product_id == product_id)
            .where(card_codes.c.order_id.is_(None))
            .order_by(card_codes.c.id)
        )
        return [row.value for row in conn.execute(query)]

    # =========================================================================
    # Allocation (runs inside the delivery transaction)
    # =========================================================================

    def pop_code(self, conn: Connection, product_id: int, order_id: str) -> Optional[str]:
        """
        Assign the next undelivered code to `order_id` and decrement the count.

        Returns the code, or None when the product is sold out. On None the
        caller must roll back its transaction.
        """
        for _ in range(self.MAX_CLAIM_ATTEMPTS):
            row = conn.execute(
                sa.select(card_codes.c.id, card_codes.c.value)
                .where(card_codes.c.product_id == product_id)
                .where(card_codes.c.order_id.is_(None))
                .order_by(card_codes.c.id)
                .limit(1)
            ).first()
            if row is None:
                return None

            claimed = conn.execute(
                card_codes.update()
                .where(card_codes.c.id == row.id)
                .where(card_codes.c.order_id.is_(None))
                .values(order_id=order_id)
            )
            if claimed.rowcount != 1:
                continue

            decremented = conn.execute(
                products.update()
                .where(products.c.id == product_id)
                .where(products.c.available_count > 0)
                .values(available_count=products.c.available_count - 1)
            )
            if decremented.rowcount != 1:
                logger.error(f"Product {product_id} count is zero but code {row.id} was unclaimed")
                return None
            return row.value

        logger.warning(f"Could not claim a code for product {product_id} after {self.MAX_CLAIM_ATTEMPTS} attempts")
        return None
