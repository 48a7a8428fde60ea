"""
bulkseo/features/subscriptions/service.py

Subscription state per shop.

Handles:
- Plan assignment (optionally starting a trial)
- Plan activation (ends the trial early)
- Entitlement snapshot resolution for job preparation
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from sqlalchemy import select, insert, update

from bulkseo.core.database import get_db_session, subscriptions
from bulkseo.core.errors import NotFoundError, ValidationError
from bulkseo.features.plans.catalog import (
    LOWEST_PLAN_KEY,
    TRIAL_DAYS,
    get_plan_limits,
    resolve_plan_key,
)
from bulkseo.models.subscription import Entitlement, SubscriptionState, TrialInfo


logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite drops tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def assign_plan(
    shop: str,
    plan_key: str,
    *,
    start_trial: bool = False,
    now: Optional[datetime] = None,
) -> SubscriptionState:
    """
    Assign a plan to a shop (creates or updates).

    Args:
        shop: Shop domain
        plan_key: Plan key or display name
        start_trial: Open a TRIAL_DAYS trial window
        now: Clock override

    Raises:
        ValidationError: If plan_key is blank
        NotFoundError: If plan_key matches no plan
    """
    if not plan_key or not str(plan_key).strip():
        raise ValidationError("plan_key is required")
    key = resolve_plan_key(plan_key)
    if key is None:
        raise NotFoundError(f"Plan {plan_key} not found")

    now = now or datetime.now(timezone.utc)
    trial_ends_at = now + timedelta(days=TRIAL_DAYS) if start_trial else None
    activated_at = None if start_trial else now

    with get_db_session() as session:
        existing = session.execute(
            select(subscriptions).where(subscriptions.c.shop == shop)
        ).first()

        if existing:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.shop == shop)
                .values(plan_key=key, trial_ends_at=trial_ends_at, activated_at=activated_at, updated_at=now)
            )
        else:
            session.execute(
                insert(subscriptions).values(
                    shop=shop,
                    plan_key=key,
                    trial_ends_at=trial_ends_at,
                    activated_at=activated_at,
                    created_at=now,
                    updated_at=now,
                )
            )

    logger.info(
        "[subscriptions] plan assigned",
        extra={"shop": shop, "plan_key": key, "trial_ends_at": trial_ends_at.isoformat() if trial_ends_at else None},
    )
    return SubscriptionState(plan_key=key, trial_active=start_trial, trial_ends_at=trial_ends_at)


def activate_plan(shop: str, *, now: Optional[datetime] = None) -> SubscriptionState:
    """End the trial for the shop's current plan."""
    now = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.shop == shop)
        ).first()
        if not row:
            raise NotFoundError(f"No subscription for shop {shop}")
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.shop == shop)
            .values(trial_ends_at=None, activated_at=now, updated_at=now)
        )
        plan_key = row.plan_key

    logger.info("[subscriptions] plan activated", extra={"shop": shop, "plan_key": plan_key})
    return SubscriptionState(plan_key=plan_key)


def get_subscription_state(shop: str, *, now: Optional[datetime] = None) -> SubscriptionState:
    """Current subscription; shops without one get the lowest tier, no trial."""
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.shop == shop)
        ).first()

    if not row:
        return SubscriptionState(plan_key=LOWEST_PLAN_KEY)

    trial_ends_at = _aware(row.trial_ends_at)
    current = now or datetime.now(timezone.utc)
    trial_active = bool(trial_ends_at and row.activated_at is None and current < trial_ends_at)
    return SubscriptionState(plan_key=row.plan_key, trial_active=trial_active, trial_ends_at=trial_ends_at)


def get_entitlement(shop: str, *, now: Optional[datetime] = None) -> Entitlement:
    """Entitlement snapshot in the shape the entitlement source returns."""
    state = get_subscription_state(shop, now=now)
    plan = get_plan_limits(state.plan_key)
    return Entitlement(
        plan_key=plan.key,
        language_limit=plan.language_limit,
        product_limit=plan.product_limit,
        collection_limit=plan.collection_limit,
        trial=TrialInfo(active=state.trial_active, ends_at=state.trial_ends_at),
    )
