"""
Tests for the in-memory token ledger and pricing.
"""
import random

import pytest

from bulkseo.core.errors import InsufficientTokensError, LedgerError, ValidationError
from bulkseo.features.tokens.ledger import TokenLedger
from bulkseo.features.tokens.pricing import (
    calculate_feature_cost,
    cost_per_language,
    is_valid_purchase_amount,
    tokens_for_purchase,
)
from bulkseo.models.ledger import LedgerSnapshot
from bulkseo.models.plan import TokenPolicy


def _ledger(balance=10_000, policy=TokenPolicy.METERED):
    return TokenLedger(LedgerSnapshot(balance=balance, total_purchased=balance), policy)


class TestReservations:
    def test_reserve_commit_moves_to_total_used(self):
        ledger = _ledger(5000)
        reservation = ledger.reserve(2000, feature="ai-seo-product-enhanced", entity_id="p1")
        assert ledger.balance == 3000
        debit = ledger.commit(reservation, languages=("de",))
        assert debit.amount == 2000
        assert debit.languages == ("de",)
        snapshot = ledger.snapshot()
        assert snapshot.balance == 3000
        assert snapshot.total_used == 2000

    def test_release_restores_balance(self):
        ledger = _ledger(5000)
        reservation = ledger.reserve(2000)
        ledger.release(reservation)
        assert ledger.balance == 5000
        assert ledger.snapshot().total_used == 0

    def test_insufficient_raises(self):
        ledger = _ledger(10)
        with pytest.raises(InsufficientTokensError) as exc:
            ledger.reserve(50)
        assert exc.value.required == 50
        assert exc.value.available == 10
        assert exc.value.needed == 40
        assert ledger.balance == 10

    def test_reservation_is_single_use(self):
        ledger = _ledger()
        reservation = ledger.reserve(100)
        ledger.commit(reservation)
        with pytest.raises(LedgerError):
            ledger.commit(reservation)
        with pytest.raises(LedgerError):
            ledger.release(reservation)

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            _ledger().reserve(-1)
        with pytest.raises(ValidationError):
            _ledger().can_afford(-5)

    def test_outstanding_reservation_not_spent_in_snapshot(self):
        ledger = _ledger(1000)
        ledger.reserve(400)
        assert ledger.balance == 600
        assert ledger.reserved == 400
        assert ledger.snapshot().balance == 1000


class TestIncludedPolicy:
    def test_included_never_debits(self):
        ledger = _ledger(0, TokenPolicy.INCLUDED)
        assert ledger.can_afford(10_000_000)
        reservation = ledger.reserve(3000, feature="ai-seo-collection")
        assert reservation.amount == 0
        assert ledger.commit(reservation) is None
        assert ledger.snapshot().total_used == 0
        assert ledger.debits == []


def test_balance_never_negative_over_random_sequences():
    rng = random.Random(7)
    for _ in range(50):
        ledger = _ledger(rng.randint(0, 5000))
        held = []
        for _ in range(40):
            action = rng.choice(("reserve", "commit", "release"))
            if action == "reserve":
                try:
                    held.append(ledger.reserve(rng.randint(0, 1500)))
                except InsufficientTokensError:
                    pass
            elif held:
                reservation = held.pop(rng.randrange(len(held)))
                if action == "commit":
                    ledger.commit(reservation)
                else:
                    ledger.release(reservation)
            assert ledger.balance >= 0
            assert ledger.snapshot().balance >= 0


class TestPricing:
    def test_costs(self):
        assert cost_per_language("seo-product-basic") == 0
        assert calculate_feature_cost("ai-seo-product-enhanced", 2) == 4000
        with pytest.raises(ValidationError):
            cost_per_language("unknown")

    def test_purchase_amounts(self):
        assert is_valid_purchase_amount(10)
        assert is_valid_purchase_amount(1000)
        assert not is_valid_purchase_amount(3)
        assert not is_valid_purchase_amount(12)
        assert not is_valid_purchase_amount(1005)

    def test_tokens_for_purchase(self):
        assert tokens_for_purchase(10) == 30_000_000
        assert tokens_for_purchase(5) == 15_000_000
