"""
Reconciliation matcher.

Decides whether an observed transfer pays for a pending order. A transfer
matches when all of these hold:

- |transfer value - expected amount| < tolerance (0.001 USDT by default)
- order.created_at <= transfer time <= order.created_at + window (10 minutes)
- if both sides know the receiving address, they agree

All comparisons are on integers (micro-units and epoch milliseconds), so the
boundaries are exact: a transfer at exactly created_at + window matches, one
a millisecond later does not; a difference of exactly the tolerance does not
match, one micro-unit less does.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from shared.models import Order, Transfer, to_micros

logger = logging.getLogger("matcher")

DEFAULT_WINDOW_MS = 10 * 60 * 1000
DEFAULT_TOLERANCE = Decimal("0.001")


class ReconciliationMatcher:
    """
    Pure matching logic; no I/O.

    Example:
        matcher = ReconciliationMatcher()
        transfer = matcher.find_match(order, feed.fetch_recent())
    """

    def __init__(self, window_ms: int = DEFAULT_WINDOW_MS, tolerance: Decimal = DEFAULT_TOLERANCE):
        self.window_ms = window_ms
        self.tolerance_minor = to_micros(tolerance)

    def matches(self, order: Order, transfer: Transfer) -> bool:
        expected_minor = to_micros(order.amount)
        if abs(transfer.value_minor - expected_minor) >= self.tolerance_minor:
            return False

        created_ms = order.created_at_ms
        if transfer.timestamp_ms < created_ms:
            return False
        if transfer.timestamp_ms > created_ms + self.window_ms:
            return False

        if transfer.to_address and order.wallet_address and transfer.to_address != order.wallet_address:
            return False
        return True

    def find_match(self, order: Order, transfers: Iterable[Transfer]) -> Optional[Transfer]:
        """First transfer in feed order that pays for `order`, or None."""
        for transfer in transfers:
            if self.matches(order, transfer):
                logger.info(
                    f"Order {order.id}: transfer {transfer.tx_id} of {transfer.value} USDT "
                    f"matches expected {order.amount}"
                )
                return transfer
        return None

    def window_closed(self, order: Order, now_ms: int) -> bool:
        """True once no transfer could ever match this order again."""
        return now_ms > order.created_at_ms + self.window_ms
