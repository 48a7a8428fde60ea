"""
bulkseo/features/entitlements/service.py

Feature entitlement resolution.

Handles:
- Feature catalog (minimum plan, token funding, trial withholding)
- Rank gate: plan rank must reach the feature's minimum plan
- Trial gate: token-funded add-ons stay locked until the plan is activated,
  even when the rank is sufficient
- Structured logs only
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional
import logging

from bulkseo.features.plans.catalog import get_plan_limits, plan_rank
from bulkseo.models.entity import EntityKind
from bulkseo.models.error_class import ErrorClass, PlanRestriction, TrialRestriction
from bulkseo.models.subscription import SubscriptionState


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureSpec:
    key: str
    minimum_plan: str
    token_funded: bool
    trial_withheld: bool
    description: str = ""


FEATURES: Dict[str, FeatureSpec] = {
    feature_spec.key: feature_spec
    for feature_spec in (
        FeatureSpec("seo-product-basic", "starter", False, False, "Basic optimization for products"),
        FeatureSpec("seo-collection-basic", "professional", False, False, "Basic optimization for collections"),
        FeatureSpec("ai-seo-product-enhanced", "professional", True, True, "AI-enhanced add-ons for products"),
        FeatureSpec("ai-seo-collection", "professional", True, True, "AI-enhanced add-ons for collections"),
        FeatureSpec("ai-schema-advanced", "enterprise", True, True, "Advanced schema data generation"),
        FeatureSpec("ai-sitemap-optimized", "professional", True, True, "AI-optimized sitemap generation"),
    )
}

# (entity kind, enhanced) -> feature key
_KIND_FEATURES = {
    (EntityKind.PRODUCT, False): "seo-product-basic",
    (EntityKind.PRODUCT, True): "ai-seo-product-enhanced",
    (EntityKind.COLLECTION, False): "seo-collection-basic",
    (EntityKind.COLLECTION, True): "ai-seo-collection",
}


class FeatureStatus(str, Enum):
    ENABLED = "ENABLED"
    LOCKED = "LOCKED"


@dataclass(frozen=True)
class EntitlementDecision:
    feature: str
    status: FeatureStatus
    plan_key: Optional[str]
    required_plan: Optional[str] = None
    requires_activation: bool = False

    @property
    def enabled(self) -> bool:
        return self.status == FeatureStatus.ENABLED

    def to_error_class(self) -> Optional[ErrorClass]:
        """LOCKED decisions as the job taxonomy; None when enabled."""
        if self.enabled:
            return None
        if self.requires_activation:
            return TrialRestriction(
                requires_activation=True,
                message=f"{self.feature} is locked during the trial period until the plan is activated",
            )
        return PlanRestriction(
            required_plan=self.required_plan,
            message=f"{self.feature} requires the {self.required_plan or 'a higher'} plan or higher",
        )


def feature_for(kind: EntityKind, enhanced: bool) -> str:
    return _KIND_FEATURES[(EntityKind(kind), bool(enhanced))]


def get_feature(feature: str) -> Optional[FeatureSpec]:
    return FEATURES.get(feature)


def is_token_funded(feature: str) -> bool:
    feature_spec = FEATURES.get(feature)
    return bool(feature_spec and feature_spec.token_funded)


def resolve_feature(
    subscription: SubscriptionState,
    feature: str,
    now: Optional[datetime] = None,
) -> EntitlementDecision:
    """Decide whether `feature` is available to `subscription`.

    Both gates apply: the rank gate first, then the trial gate. A shop on a
    sufficient plan that is still in trial gets LOCKED with
    requires_activation for trial-withheld features.
    """
    plan_key = get_plan_limits(subscription.plan_key).key
    feature_spec = FEATURES.get(feature)

    if feature_spec is None:
        logger.warning(
            "[entitlements] LOCKED unknown feature",
            extra={"feature": feature, "plan_key": plan_key},
        )
        return EntitlementDecision(feature=feature, status=FeatureStatus.LOCKED, plan_key=plan_key)

    if plan_rank(plan_key) < plan_rank(feature_spec.minimum_plan):
        required = get_plan_limits(feature_spec.minimum_plan).name
        logger.info(
            "[entitlements] LOCKED rank",
            extra={"feature": feature, "plan_key": plan_key, "required_plan": required},
        )
        return EntitlementDecision(
            feature=feature,
            status=FeatureStatus.LOCKED,
            plan_key=plan_key,
            required_plan=required,
        )

    if feature_spec.trial_withheld and subscription.in_trial(now):
        logger.info(
            "[entitlements] LOCKED trial",
            extra={
                "feature": feature,
                "plan_key": plan_key,
                "trial_ends_at": subscription.trial_ends_at,
            },
        )
        return EntitlementDecision(
            feature=feature,
            status=FeatureStatus.LOCKED,
            plan_key=plan_key,
            requires_activation=True,
        )

    return EntitlementDecision(feature=feature, status=FeatureStatus.ENABLED, plan_key=plan_key)
