"""
Exception hierarchy for the card shop.

Each class maps onto one failure scope. The API layer translates them into
HTTP status codes; nothing here is fatal to the process.
"""


class ShopError(Exception):
    """Base class for all expected, request-scoped failures."""

    status_code = 500


class ValidationError(ShopError):
    """Request is missing required data or cannot be served (rejected before any side effect)."""

    status_code = 400


class NotFoundError(ShopError):
    """Referenced order or product does not exist."""

    status_code = 404


class PaymentGatewayError(ShopError):
    """The payment-intent collaborator was unreachable or refused the order."""

    status_code = 502


class AdminAuthError(ShopError):
    """Admin endpoint called without a valid admin token."""

    status_code = 403


class SimulatedPaymentDisabledError(ShopError):
    """Simulated-payment endpoint called while test mode is off."""

    status_code = 403
