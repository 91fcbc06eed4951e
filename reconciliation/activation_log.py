"""
Subscription activation log.

When a forwarding subscription is paid, the operator still has to configure
the forwarding bot by hand. A plain-text block with everything needed for
that is appended to a file the operator watches. Writing it is best-effort:
a failure is logged and never affects the order.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from shared.models import Order, format_amount
from shared.templates import OPERATOR_TIMEZONE

logger = logging.getLogger("activation_log")

RULE = "=" * 40
THIN_RULE = "-" * 40

BLOCK_TEMPLATE = """
{rule}
Order: {order_id}
Time: {time}
{thin_rule}
Source channel: {source_channel}
Target channel: {target_channel}
Text replacements: {replaces}
Keyword filter: {keywords}
Amount: {amount} USDT
{rule}

"""


def render_block(order: Order, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    sub = order.subscription
    return BLOCK_TEMPLATE.format(
        rule=RULE,
        thin_rule=THIN_RULE,
        order_id=order.id,
        time=now.astimezone(OPERATOR_TIMEZONE).strftime("%Y-%m-%d %H:%M:%S"),
        source_channel=sub.source_channel if sub else "",
        target_channel=sub.target_channel if sub else "",
        replaces=sub.describe_replaces() if sub else "none",
        keywords=(sub.keywords if sub else "") or "none",
        amount=format_amount(order.amount),
    )


class ActivationLog:
    """Append-only operator hand-off file for paid subscriptions."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def append(self, order: Order, now: Optional[datetime] = None) -> bool:
        """Append the activation block for `order`. Returns False if the write failed."""
        if order.subscription is None:
            logger.warning(f"Order {order.id} has no subscription config; nothing to log")
            return False
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(render_block(order, now))
        except OSError as e:
            logger.error(f"Failed to write activation log for {order.id} to {self.path}: {e}")
            return False
        logger.info(f"Activation details for {order.id} written to {self.path}")
        return True
