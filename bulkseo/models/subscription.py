"""
bulkseo/models/subscription.py

Subscription state and the entitlement snapshot a caller refreshes before
building a job.
"""

from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionState(BaseModel):
    """
    SubscriptionState is the shop's current plan and trial window.

    A trial counts as active only while trial_active is set and trial_ends_at
    (if any) is still in the future.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    plan_key: str
    trial_active: bool = False
    trial_ends_at: Optional[datetime] = None

    def in_trial(self, now: Optional[datetime] = None) -> bool:
        if not self.trial_active:
            return False
        ends_at = _aware(self.trial_ends_at)
        if ends_at is None:
            return True
        current = _aware(now) or datetime.now(timezone.utc)
        return current < ends_at


class TrialInfo(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    active: bool = False
    ends_at: Optional[datetime] = None


class Entitlement(BaseModel):
    """
    Entitlement is the snapshot read from the entitlement source:
    {planKey, languageLimit, productLimit, trial: {active, endsAt}}.

    collection_limit is optional on the wire; when absent the plan catalog
    value is used.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    plan_key: str
    language_limit: int
    product_limit: int
    collection_limit: Optional[int] = None
    trial: TrialInfo = Field(default_factory=TrialInfo)

    @classmethod
    def from_payload(cls, payload: dict) -> "Entitlement":
        return cls.model_validate(payload)

    @property
    def subscription(self) -> SubscriptionState:
        return SubscriptionState(
            plan_key=self.plan_key,
            trial_active=self.trial.active,
            trial_ends_at=self.trial.ends_at,
        )
