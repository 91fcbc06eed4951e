"""
Payment-intent client.

Before an order is stored, the payment collaborator is asked to open a
transaction for it; it answers with the receiving wallet address and a hosted
payment page. Requests are authenticated with an md5 signature that must stay
byte-compatible with the collaborator:

    signature = md5("k1=v1&k2=v2&..." (keys sorted) + token).hexdigest()

Values are used raw (not URL-encoded) and the token is appended raw.
"""

import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx

from shared.errors import PaymentGatewayError
from shared.models import format_amount

logger = logging.getLogger("payment_gateway")

SUCCESS_STATUS_CODE = 200


def _stringify(value: Any) -> str:
    if isinstance(value, Decimal):
        return format_amount(value)
    return str(value)


def sign_params(params: Mapping[str, Any], token: str) -> str:
    """Lowercase hex md5 over the sorted key=value string followed by the token."""
    param_string = "&".join(f"{key}={_stringify(params[key])}" for key in sorted(params))
    return hashlib.md5((param_string + token).encode("utf-8")).hexdigest().lower()


@dataclass
class PaymentIntent:
    """What the collaborator hands back for a new order."""
    wallet_address: str
    payment_url: str
    actual_amount: Optional[Decimal] = None


class PaymentGatewayClient:
    """
    Creates payment intents at the external payment service.

    Raises PaymentGatewayError on any failure; the caller must not persist
    the order in that case.
    """

    def __init__(
        self,
        api_url: str,
        token: str,
        notify_url: str,
        redirect_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url
        self._token = token
        self.notify_url = notify_url
        self.redirect_url = redirect_url
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)

    def create_intent(self, order_id: str, amount: Decimal) -> PaymentIntent:
        params = {
            "order_id": order_id,
            "amount": format_amount(amount),
            "notify_url": self.notify_url,
            "redirect_url": self.redirect_url,
        }
        body = {
            **params,
            "amount": float(amount),
            "signature": sign_params(params, self._token),
        }
        logger.info(f"Creating payment intent for {order_id} ({params['amount']} USDT)")

        try:
            response = self.client.post(self.api_url, json=body, timeout=self.timeout)
            payload = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Payment service request failed for {order_id}: {e.__class__.__name__}: {e}")
            raise PaymentGatewayError("Payment service unavailable") from e
        except ValueError as e:
            logger.error(f"Payment service returned a non-JSON body for {order_id} (HTTP {response.status_code})")
            raise PaymentGatewayError("Payment service returned an invalid response") from e

        if not isinstance(payload, dict) or payload.get("status_code") != SUCCESS_STATUS_CODE:
            message = payload.get("message") if isinstance(payload, dict) else None
            code = payload.get("status_code") if isinstance(payload, dict) else None
            logger.error(f"Payment intent refused for {order_id}: status_code={code} message={message}")
            raise PaymentGatewayError(f"Payment creation failed: {message or f'status_code {code}'}")

        data = payload.get("data") or {}
        wallet_address = data.get("token")
        if not wallet_address:
            logger.error(f"Payment intent for {order_id} has no wallet address")
            raise PaymentGatewayError("Payment service returned no wallet address")

        actual_amount = None
        if data.get("actual_amount") is not None:
            try:
                actual_amount = Decimal(str(data["actual_amount"]))
            except InvalidOperation:
                logger.warning(f"Ignoring unparseable actual_amount for {order_id}: {data['actual_amount']!r}")

        intent = PaymentIntent(
            wallet_address=str(wallet_address),
            payment_url=str(data.get("payment_url") or ""),
            actual_amount=actual_amount,
        )
        logger.info(f"Payment intent created for {order_id}: wallet {intent.wallet_address}")
        return intent
