"""
Durable token balance per shop.

Backs the token balance source read before a job. The apply phase holds an
entity's cost here before persisting it, then settles the hold into a debit
or releases it. Every change appends a token_events row; rows are never
updated or deleted.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from bulkseo.core.database import get_db_session, token_balances, token_events
from bulkseo.core.errors import InsufficientTokensError, ValidationError
from bulkseo.features.plans.catalog import get_plan_limits
from bulkseo.features.tokens.pricing import is_valid_purchase_amount, tokens_for_purchase
from bulkseo.models.ledger import LedgerSnapshot, Reservation, TokenDebit


logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _get_or_create_row(session: Session, shop: str):
    row = session.execute(
        select(token_balances).where(token_balances.c.shop == shop)
    ).first()
    if row:
        return row
    session.execute(insert(token_balances).values(shop=shop, balance=0, total_purchased=0, total_used=0, included_tokens=0))
    return session.execute(
        select(token_balances).where(token_balances.c.shop == shop)
    ).first()


def _append_event(
    session: Session,
    shop: str,
    event_type: str,
    amount: int,
    balance_after: int,
    *,
    feature: Optional[str] = None,
    entity_id: Optional[str] = None,
    usd_amount: Optional[Decimal] = None,
    charge_id: Optional[str] = None,
    metadata: Optional[Dict] = None,
) -> None:
    session.execute(
        insert(token_events).values(
            shop=shop,
            event_type=event_type,
            feature=feature,
            entity_id=entity_id,
            amount=amount,
            balance_after=balance_after,
            usd_amount=str(usd_amount) if usd_amount is not None else None,
            charge_id=charge_id,
            event_metadata=metadata or {},
            created_at=datetime.now(timezone.utc),
        )
    )


def get_ledger_snapshot(shop: str) -> LedgerSnapshot:
    """Current {balance, totalPurchased, totalUsed}; zeros for unknown shops."""
    with get_db_session() as session:
        row = session.execute(
            select(token_balances).where(token_balances.c.shop == shop)
        ).first()
        if not row:
            return LedgerSnapshot()
        return LedgerSnapshot(
            balance=int(row.balance),
            total_purchased=int(row.total_purchased),
            total_used=int(row.total_used),
        )


def credit_purchase(
    shop: str,
    usd_amount: Union[int, float, Decimal],
    charge_id: Optional[str] = None,
) -> LedgerSnapshot:
    """
    Credit tokens bought through the billing collaborator.

    Raises:
        ValidationError: If the amount is outside the purchase rules
    """
    if not is_valid_purchase_amount(usd_amount):
        raise ValidationError(f"Invalid purchase amount: {usd_amount}")

    tokens = tokens_for_purchase(usd_amount)
    with get_db_session() as session:
        row = _get_or_create_row(session, shop)
        new_balance = int(row.balance) + tokens
        new_purchased = int(row.total_purchased) + tokens
        session.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop)
            .values(balance=new_balance, total_purchased=new_purchased)
        )
        _append_event(
            session,
            shop,
            "PURCHASE",
            tokens,
            new_balance,
            usd_amount=Decimal(str(usd_amount)),
            charge_id=charge_id,
        )
        snapshot = LedgerSnapshot(balance=new_balance, total_purchased=new_purchased, total_used=int(row.total_used))

    logger.info(
        "[tokens] PURCHASE",
        extra={"shop": shop, "tokens": tokens, "usd_amount": str(usd_amount), "charge_id": charge_id},
    )
    return snapshot


def set_included_tokens(shop: str, plan_key: str) -> LedgerSnapshot:
    """
    Replace the plan's included grant (plan switch or monthly reset).

    The previous grant is removed before the new one is added, so grants
    never accumulate; purchased tokens are kept.
    """
    plan = get_plan_limits(plan_key)
    with get_db_session() as session:
        row = _get_or_create_row(session, shop)
        previous_grant = int(row.included_tokens)
        purchased_remaining = max(0, int(row.balance) - previous_grant)
        new_balance = purchased_remaining + plan.included_tokens
        session.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop)
            .values(balance=new_balance, included_tokens=plan.included_tokens)
        )
        _append_event(
            session,
            shop,
            "INCLUDED",
            new_balance - int(row.balance),
            new_balance,
            metadata={"plan": plan.key, "included": plan.included_tokens, "previous_included": previous_grant},
        )
        snapshot = LedgerSnapshot(
            balance=new_balance,
            total_purchased=int(row.total_purchased),
            total_used=int(row.total_used),
        )

    logger.info(
        "[tokens] INCLUDED",
        extra={"shop": shop, "plan_key": plan.key, "included_tokens": plan.included_tokens},
    )
    return snapshot


def hold_tokens(
    shop: str,
    amount: int,
    *,
    feature: Optional[str] = None,
    entity_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> LedgerSnapshot:
    """
    Set tokens aside before an apply persists content.

    The check and the decrement are one conditional UPDATE, so two applies for
    the same shop can never both hold the last tokens.

    Raises:
        InsufficientTokensError: If the durable balance cannot cover `amount`
    """
    with get_db_session() as session:
        _get_or_create_row(session, shop)
        # Conditional decrement: the balance check holds even across processes
        result = session.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop, token_balances.c.balance >= amount)
            .values(balance=token_balances.c.balance - amount)
        )
        row = session.execute(
            select(token_balances).where(token_balances.c.shop == shop)
        ).first()
        balance = int(row.balance)
        if result.rowcount == 0:
            logger.warning(
                "[tokens] HOLD_REJECTED",
                extra={"shop": shop, "entity_id": entity_id, "required": amount, "available": balance},
            )
            raise InsufficientTokensError(required=amount, available=balance)

        _append_event(
            session,
            shop,
            "HOLD",
            -amount,
            balance,
            feature=feature,
            entity_id=entity_id,
            metadata={"reservation_id": reference} if reference else None,
        )
        return LedgerSnapshot(balance=balance, total_purchased=int(row.total_purchased), total_used=int(row.total_used))


def release_tokens(
    shop: str,
    amount: int,
    *,
    feature: Optional[str] = None,
    entity_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> LedgerSnapshot:
    """Return a hold to the balance (the persist it covered failed)."""
    with get_db_session() as session:
        row = _get_or_create_row(session, shop)
        balance = _release(session, shop, row, amount, feature=feature, entity_id=entity_id, reference=reference)
        session.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop)
            .values(balance=balance)
        )
        return LedgerSnapshot(balance=balance, total_purchased=int(row.total_purchased), total_used=int(row.total_used))


def _release(
    session: Session,
    shop: str,
    row,
    amount: int,
    *,
    feature: Optional[str] = None,
    entity_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> int:
    balance = int(row.balance) + amount
    if amount:
        _append_event(
            session,
            shop,
            "RELEASE",
            amount,
            balance,
            feature=feature,
            entity_id=entity_id,
            metadata={"reservation_id": reference} if reference else None,
        )
    return balance


def record_debits(
    shop: str,
    debits: Iterable[TokenDebit],
    *,
    released: int = 0,
    reference: Optional[str] = None,
) -> LedgerSnapshot:
    """
    Persist committed apply-phase debits in one transaction.

    `released` is a hold returned to the balance first, so a held entity
    settles (hold back, actual usage out) atomically.

    Raises:
        InsufficientTokensError: If the durable balance cannot cover the
            debits (nothing is written in that case)
    """
    debits = [d for d in debits if d.amount > 0]
    with get_db_session() as session:
        row = _get_or_create_row(session, shop)
        first = debits[0] if debits else None
        balance = _release(
            session,
            shop,
            row,
            released,
            feature=first.feature if first else None,
            entity_id=first.entity_id if first else None,
            reference=reference,
        )
        total_used = int(row.total_used)
        required = sum(d.amount for d in debits)
        if required > balance:
            logger.error(
                "[tokens] DEBIT_REJECTED",
                extra={"shop": shop, "required": required, "available": balance},
            )
            raise InsufficientTokensError(required=required, available=balance)

        for debit in debits:
            balance -= debit.amount
            total_used += debit.amount
            _append_event(
                session,
                shop,
                "USAGE",
                -debit.amount,
                balance,
                feature=debit.feature,
                entity_id=debit.entity_id,
                metadata={"languages": list(debit.languages), **debit.metadata},
            )

        session.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop)
            .values(balance=balance, total_used=total_used)
        )
        snapshot = LedgerSnapshot(balance=balance, total_purchased=int(row.total_purchased), total_used=total_used)

    if debits:
        logger.info(
            "[tokens] USAGE",
            extra={"shop": shop, "debits": len(debits), "amount": required, "balance_after": balance},
        )
    return snapshot


def get_token_history(shop: str, limit: int = 20) -> List[Dict]:
    """Most recent token events for a shop, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(token_events)
            .where(token_events.c.shop == shop)
            .order_by(token_events.c.id.desc())
            .limit(limit)
        ).fetchall()

    return [
        {
            "id": row.id,
            "eventType": row.event_type,
            "feature": row.feature,
            "entityId": row.entity_id,
            "amount": int(row.amount),
            "balanceAfter": int(row.balance_after),
            "chargeId": row.charge_id,
            "metadata": row.event_metadata or {},
            "createdAt": _iso(row.created_at),
        }
        for row in rows
    ]


class ShopTokenAccount:
    """Durable counterpart of the apply-phase ledger for one shop."""

    def __init__(self, shop: str):
        self.shop = shop

    def hold(self, reservation: Reservation) -> LedgerSnapshot:
        return hold_tokens(
            self.shop,
            reservation.amount,
            feature=reservation.feature,
            entity_id=reservation.entity_id,
            reference=reservation.reservation_id,
        )

    def release(self, reservation: Reservation) -> LedgerSnapshot:
        return release_tokens(
            self.shop,
            reservation.amount,
            feature=reservation.feature,
            entity_id=reservation.entity_id,
            reference=reservation.reservation_id,
        )

    def settle(self, reservation: Reservation, debit: Optional[TokenDebit]) -> LedgerSnapshot:
        """Swap the hold for the debit of what was actually applied."""
        return record_debits(
            self.shop,
            [debit] if debit is not None else [],
            released=reservation.amount,
            reference=reservation.reservation_id,
        )

    def snapshot(self) -> LedgerSnapshot:
        return get_ledger_snapshot(self.shop)
