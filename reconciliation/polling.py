"""
Payment polling client.

Drives the check endpoint on a fixed interval until the order is settled,
the local countdown runs out, or the caller cancels. This is the only place
that decides "expired" from the payer's side, and it does so purely from
elapsed wall-clock time since order creation. Once the countdown is over
it stops polling so no more feed calls are triggered.

Used by the CLI's `poll` command; a browser page would do the same thing.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import httpx

from shared.models import CheckResult, OrderKind, utc_now

logger = logging.getLogger("poller")

DEFAULT_INTERVAL_SECONDS = 15.0
DEFAULT_WINDOW_SECONDS = 600.0

CHECK_PATHS = {
    OrderKind.CARD: "/api/orders/{order_id}/check",
    OrderKind.SUBSCRIPTION: "/api/telegram/{order_id}/check",
}


class PollState(str, Enum):
    """How a polling run ended."""
    DELIVERED = "delivered"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class PollOutcome:
    state: PollState
    code: Optional[str] = None
    polls: int = 0


class PaymentPoller:
    """
    Polls one order's check endpoint.

    Example:
        poller = PaymentPoller("http://localhost:8000", order_id, created_at)
        outcome = poller.run()          # blocks; call poller.cancel() from elsewhere to stop
        if outcome.state == PollState.DELIVERED:
            print(outcome.code)
    """

    def __init__(
        self,
        base_url: str,
        order_id: str,
        created_at: datetime,
        kind: OrderKind = OrderKind.CARD,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        window: float = DEFAULT_WINDOW_SECONDS,
        client: Optional[httpx.Client] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.url = base_url.rstrip("/") + CHECK_PATHS[OrderKind(kind)].format(order_id=order_id)
        self.order_id = order_id
        self.created_at = created_at
        self.interval = interval
        self.window = window
        self.client = client or httpx.Client(timeout=10.0)
        self.clock = clock or utc_now
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        """Seconds left on the countdown (never negative)."""
        elapsed = (self.clock() - self.created_at).total_seconds()
        return max(0.0, self.window - elapsed)

    def cancel(self) -> None:
        """Stop polling; a run() in progress returns CANCELLED promptly."""
        self._cancelled.set()

    def poll_once(self) -> Optional[CheckResult]:
        """One request to the check endpoint. Returns None on any error."""
        try:
            response = self.client.get(self.url)
            response.raise_for_status()
            return CheckResult.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Check for {self.order_id} failed: {e.__class__.__name__}: {e}")
            return None

    def run(self) -> PollOutcome:
        polls = 0
        while not self._cancelled.is_set():
            remaining = self.remaining()
            if remaining <= 0:
                logger.info(f"Order {self.order_id} expired locally after {polls} checks")
                return PollOutcome(state=PollState.EXPIRED, polls=polls)

            result = self.poll_once()
            polls += 1
            if result is not None and result.is_terminal():
                state = PollState(result.status)
                logger.info(f"Order {self.order_id} finished as {state.value} after {polls} checks")
                return PollOutcome(state=state, code=result.code, polls=polls)

            if self._cancelled.wait(min(self.interval, self.remaining())):
                break

        logger.info(f"Polling for {self.order_id} cancelled after {polls} checks")
        return PollOutcome(state=PollState.CANCELLED, polls=polls)
