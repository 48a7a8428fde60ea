"""
Tests for subscription state and the entitlement snapshot.
"""
from datetime import datetime, timedelta, timezone

import pytest

from bulkseo.core.errors import NotFoundError, ValidationError
from bulkseo.features.plans.catalog import TRIAL_DAYS
from bulkseo.features.subscriptions.service import (
    activate_plan,
    assign_plan,
    get_entitlement,
    get_subscription_state,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestAssignPlan:
    def test_shop_without_subscription_is_starter(self, db, shop):
        state = get_subscription_state(shop)
        assert state.plan_key == "starter"
        assert not state.trial_active

    def test_assign_normalizes_plan_key(self, db, shop):
        assign_plan(shop, "Growth_Plus", now=NOW)
        assert get_subscription_state(shop, now=NOW).plan_key == "growth plus"

    def test_unknown_plan(self, db, shop):
        with pytest.raises(NotFoundError):
            assign_plan(shop, "platinum")
        with pytest.raises(ValidationError):
            assign_plan(shop, "  ")

    def test_reassign_updates(self, db, shop):
        assign_plan(shop, "starter", now=NOW)
        assign_plan(shop, "enterprise", now=NOW)
        assert get_subscription_state(shop, now=NOW).plan_key == "enterprise"


class TestTrial:
    def test_trial_window(self, db, shop):
        assign_plan(shop, "growth", start_trial=True, now=NOW)

        state = get_subscription_state(shop, now=NOW + timedelta(days=1))
        assert state.trial_active
        assert state.trial_ends_at == NOW + timedelta(days=TRIAL_DAYS)

        assert not get_subscription_state(shop, now=NOW + timedelta(days=TRIAL_DAYS, seconds=1)).trial_active

    def test_activation_ends_trial(self, db, shop):
        assign_plan(shop, "growth", start_trial=True, now=NOW)
        activate_plan(shop, now=NOW + timedelta(hours=1))
        assert not get_subscription_state(shop, now=NOW + timedelta(hours=2)).trial_active

    def test_activate_without_subscription(self, db, shop):
        with pytest.raises(NotFoundError):
            activate_plan(shop)


def test_entitlement_snapshot(db, shop):
    assign_plan(shop, "professional plus", start_trial=True, now=NOW)

    entitlement = get_entitlement(shop, now=NOW)

    assert entitlement.plan_key == "professional plus"
    assert entitlement.language_limit == 2
    assert entitlement.product_limit == 200
    assert entitlement.collection_limit == 20
    assert entitlement.trial.active
    assert entitlement.subscription.in_trial(NOW)
    payload = entitlement.model_dump(by_alias=True)
    assert payload["planKey"] == "professional plus"
    assert payload["languageLimit"] == 2
