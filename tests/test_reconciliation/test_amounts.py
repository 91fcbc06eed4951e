"""
Tests for expected-amount minting.
"""

import random
from decimal import Decimal

import pytest

from reconciliation.amounts import SUFFIX_MAX, SUFFIX_MIN, AmountDisambiguator
from shared.models import to_micros


class TestDerive:
    """Tests for AmountDisambiguator.derive."""

    def test_fixed_suffix(self):
        amounts = AmountDisambiguator(randint=lambda low, high: 37)

        assert amounts.derive(Decimal("199")) == Decimal("199.037")
        assert amounts.derive(Decimal("19.9")) == Decimal("19.937")

    @pytest.mark.parametrize("suffix,expected", [(SUFFIX_MIN, "199.001"), (SUFFIX_MAX, "199.099")])
    def test_suffix_bounds(self, suffix, expected):
        amounts = AmountDisambiguator(randint=lambda low, high: suffix)
        assert amounts.derive(Decimal("199")) == Decimal(expected)

    def test_draws_from_one_to_ninety_nine(self):
        seen = []

        def record(low, high):
            seen.append((low, high))
            return low

        AmountDisambiguator(randint=record).derive(Decimal("1"))

        assert seen == [(1, 99)]

    def test_never_returns_base_price(self):
        amounts = AmountDisambiguator(randint=random.Random(7).randint)

        for base in (Decimal("0"), Decimal("199"), Decimal("19.9"), Decimal("5.5")):
            for _ in range(500):
                amount = amounts.derive(base)
                assert amount != base
                assert base < amount < base + Decimal("0.1")
                assert amount == amount.quantize(Decimal("0.001"))

    def test_collision_rate_bounded_by_suffix_count(self):
        amounts = AmountDisambiguator(randint=random.Random(11).randint)
        trials = 20_000

        collisions = sum(
            amounts.derive(Decimal("199")) == amounts.derive(Decimal("199"))
            for _ in range(trials)
        )

        # expected rate 1/99; leave room for sampling noise
        assert collisions / trials < 0.015


class TestDeriveAvoiding:
    def test_redraws_on_collision(self):
        draws = iter([37, 37, 52])
        amounts = AmountDisambiguator(randint=lambda low, high: next(draws))

        amount = amounts.derive_avoiding(Decimal("199"), taken={to_micros(Decimal("199.037"))})

        assert amount == Decimal("199.052")

    def test_gives_up_after_attempts(self):
        amounts = AmountDisambiguator(randint=lambda low, high: 37)

        amount = amounts.derive_avoiding(Decimal("199"), taken={199_037_000}, attempts=3)

        assert amount == Decimal("199.037")
