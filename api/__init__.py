"""
HTTP surface for the card shop.

A single FastAPI application exposing the storefront, order creation, the
payment-check endpoints polled by the buyer's page, and the admin endpoints.
"""

from api.main import app

__all__ = ["app"]
