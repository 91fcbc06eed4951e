"""
Order reconciliation and delivery engine.

Payment is verified by polling a public transaction feed rather than by
webhook:
- each order gets a statistically unique expected amount
- every check fetches recent transfers and matches one to the order
- a match is committed exactly once, together with the inventory change
- operator notifications go out on a background pool
"""

from reconciliation.amounts import AmountDisambiguator
from reconciliation.delivery import DeliveryCoordinator, DeliveryResult
from reconciliation.dispatcher import NotificationDispatcher
from reconciliation.engine import OrderService
from reconciliation.feed import TransactionFeedClient
from reconciliation.matcher import ReconciliationMatcher
from reconciliation.payment_gateway import PaymentGatewayClient, sign_params
from reconciliation.polling import PaymentPoller, PollOutcome, PollState

__all__ = [
    "AmountDisambiguator",
    "DeliveryCoordinator",
    "DeliveryResult",
    "NotificationDispatcher",
    "OrderService",
    "TransactionFeedClient",
    "ReconciliationMatcher",
    "PaymentGatewayClient",
    "sign_params",
    "PaymentPoller",
    "PollOutcome",
    "PollState",
]
