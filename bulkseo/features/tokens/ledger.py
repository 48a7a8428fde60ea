"""
In-memory token ledger used by a single bulk run.

The ledger wraps a balance snapshot read before the job. Generation only
asks can_afford(); the apply phase reserves, then commits or releases, so
the debit happens once per confirmed apply and never during generation.

Invariants:
- balance never goes negative
- committed balance only drops through commit()
- INCLUDED plans never debit
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional
from uuid import uuid4

from bulkseo.core.errors import InsufficientTokensError, LedgerError, ValidationError
from bulkseo.models.ledger import LedgerSnapshot, Reservation, TokenDebit
from bulkseo.models.plan import TokenPolicy


logger = logging.getLogger(__name__)


class TokenLedger:
    """Balance arithmetic over a LedgerSnapshot."""

    def __init__(self, snapshot: LedgerSnapshot, token_policy: TokenPolicy = TokenPolicy.METERED):
        self._balance = snapshot.balance
        self._total_purchased = snapshot.total_purchased
        self._total_used = snapshot.total_used
        self.token_policy = TokenPolicy(token_policy)
        self._reservations: Dict[str, Reservation] = {}
        self.debits: List[TokenDebit] = []

    @property
    def balance(self) -> int:
        """Balance available for new reservations."""
        return self._balance

    @property
    def reserved(self) -> int:
        return sum(r.amount for r in self._reservations.values() if r.status == "reserved")

    @property
    def unlimited(self) -> bool:
        return self.token_policy == TokenPolicy.INCLUDED

    def can_afford(self, cost: int) -> bool:
        _check_cost(cost)
        if self.unlimited:
            return True
        return self._balance >= cost

    def reserve(self, cost: int, *, feature: Optional[str] = None, entity_id: Optional[str] = None) -> Reservation:
        """Hold `cost` tokens; raises InsufficientTokensError when short."""
        _check_cost(cost)
        amount = 0 if self.unlimited else cost
        if amount > self._balance:
            logger.warning(
                "[ledger] INSUFFICIENT",
                extra={"required": cost, "available": self._balance, "entity_id": entity_id, "feature": feature},
            )
            raise InsufficientTokensError(required=cost, available=self._balance)

        self._balance -= amount
        reservation = Reservation(
            reservation_id=uuid4().hex,
            amount=amount,
            feature=feature,
            entity_id=entity_id,
        )
        self._reservations[reservation.reservation_id] = reservation
        return reservation

    def commit(self, reservation: Reservation, *, languages: tuple = ()) -> Optional[TokenDebit]:
        """Move the reserved amount into total_used. Returns the debit (None for zero amounts)."""
        held = self._take(reservation)
        held.status = "committed"
        if held.amount == 0:
            return None
        self._total_used += held.amount
        debit = TokenDebit(
            entity_id=held.entity_id or "",
            feature=held.feature or "",
            amount=held.amount,
            languages=tuple(sorted(languages)),
            metadata={"reservation_id": held.reservation_id},
        )
        self.debits.append(debit)
        return debit

    def release(self, reservation: Reservation) -> None:
        """Give the reserved amount back to the balance."""
        held = self._take(reservation)
        held.status = "released"
        self._balance += held.amount

    def snapshot(self) -> LedgerSnapshot:
        """Committed view: outstanding reservations count as still available."""
        return LedgerSnapshot(
            balance=self._balance + self.reserved,
            total_purchased=self._total_purchased,
            total_used=self._total_used,
        )

    def _take(self, reservation: Reservation) -> Reservation:
        held = self._reservations.get(reservation.reservation_id)
        if held is None:
            raise LedgerError(f"Unknown reservation {reservation.reservation_id}")
        if held.status != "reserved":
            raise LedgerError(f"Reservation {reservation.reservation_id} already {held.status}")
        return held


def _check_cost(cost: int) -> None:
    if cost < 0:
        raise ValidationError(f"Token cost must be >= 0 (got {cost})")
