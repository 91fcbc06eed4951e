"""
Expected-amount minting.

Every order shares one receiving address, so the transfer amount is the only
thing that tells two pending orders apart. Each order is asked to pay its base
price plus a random suffix of 0.001-0.099, which keeps two orders placed in
the same matching window apart with probability 98/99 or better.
"""

import logging
import random
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

from shared.models import to_micros

logger = logging.getLogger("amounts")

SUFFIX_MIN = 1
SUFFIX_MAX = 99
SUFFIX_SCALE = Decimal("0.001")


class AmountDisambiguator:
    """
    Derives a statistically unique expected amount from a base price.

    Example:
        amounts = AmountDisambiguator()
        amounts.derive(Decimal("199"))   # e.g. Decimal("199.037")
    """

    def __init__(self, randint: Optional[Callable[[int, int], int]] = None):
        self._randint = randint or random.SystemRandom().randint

    def derive(self, base_price: Decimal) -> Decimal:
        """Base price plus r/1000 with r uniform in [1, 99], to three decimals."""
        suffix = self._randint(SUFFIX_MIN, SUFFIX_MAX)
        amount = Decimal(base_price) + suffix * SUFFIX_SCALE
        return amount.quantize(SUFFIX_SCALE, rounding=ROUND_HALF_UP)

    def derive_avoiding(
        self,
        base_price: Decimal,
        taken: Iterable[int],
        attempts: int = 5,
    ) -> Decimal:
        """
        Like derive(), but re-draw when the amount is already expected by a live order.

        `taken` holds amounts in micro-units. After `attempts` draws the last
        one is returned anyway; the matching window bounds the damage.
        """
        taken = set(taken)
        amount = self.derive(base_price)
        for _ in range(attempts - 1):
            if to_micros(amount) not in taken:
                return amount
            amount = self.derive(base_price)
        if to_micros(amount) in taken:
            logger.warning(f"Amount {amount} collides with a live order after {attempts} draws")
        return amount
