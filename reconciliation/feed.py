"""
Transaction feed client.

Fetches recent TRC20 transfers for the receiving address from a public
explorer (TronGrid-style JSON). The feed is the only evidence of payment we
have, and it is flaky: every failure here degrades to "no transfers seen",
which the check endpoint reports as still pending.

Expected payload:
    {"data": [{"transaction_id": "...", "value": "199037000",
               "block_timestamp": 1700000000000, "to": "T..."}]}
"""

import logging
from typing import Any, Optional

import httpx

from shared.models import Transfer

logger = logging.getLogger("feed")

API_KEY_HEADER = "TRON-PRO-API-KEY"


def parse_transfer(entry: dict[str, Any]) -> Optional[Transfer]:
    """Build a Transfer from one feed entry, or None if it is unusable."""
    tx_id = entry.get("transaction_id") or entry.get("tx_id")
    value = entry.get("value")
    block_timestamp = entry.get("block_timestamp")
    if not tx_id or value is None or block_timestamp is None:
        return None
    try:
        return Transfer(
            value_minor=int(value),
            timestamp_ms=int(block_timestamp),
            tx_id=str(tx_id),
            to_address=entry.get("to") or None,
        )
    except (TypeError, ValueError):
        return None


class TransactionFeedClient:
    """
    One bounded GET per call; never raises.

    Example:
        feed = TransactionFeedClient("https://api.trongrid.io/v1/accounts/T.../transactions/trc20")
        for transfer in feed.fetch_recent():
            ...
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.client = client or httpx.Client(timeout=timeout)
        self.timeout = timeout

    def fetch_recent(self) -> list[Transfer]:
        """
        Recent transfers in feed order.

        Returns an empty list on transport errors, timeouts, non-200
        responses and unparseable bodies.
        """
        if not self.url:
            logger.warning("Transaction feed URL not configured; treating as no transfers")
            return []

        headers = {API_KEY_HEADER: self.api_key} if self.api_key else {}
        try:
            response = self.client.get(self.url, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(f"Feed request failed: {e.__class__.__name__}: {e}")
            return []

        if response.status_code != 200:
            logger.error(f"Feed returned HTTP {response.status_code}")
            return []

        try:
            payload = response.json()
        except ValueError:
            logger.error("Feed returned a non-JSON body")
            return []

        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            logger.error("Feed body has no 'data' list")
            return []

        transfers = []
        for entry in entries:
            transfer = parse_transfer(entry) if isinstance(entry, dict) else None
            if transfer is None:
                logger.warning(f"Skipping malformed feed entry: {entry!r:.200}")
                continue
            transfers.append(transfer)

        logger.debug(f"Feed returned {len(transfers)} transfers")
        return transfers
