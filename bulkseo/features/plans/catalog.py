"""
bulkseo/features/plans/catalog.py

Static plan catalog.

Handles:
- Plan key normalization ("Growth Extra", "growth_extra", "growthextra")
- Limits lookup with a safe fallback to the lowest tier
- Rank comparisons and upgrade suggestions
"""

import logging
from typing import Dict, List, Optional

from bulkseo.models.plan import PlanTier, TokenPolicy


logger = logging.getLogger(__name__)

TRIAL_DAYS = 5

# Rank order matters: every "at least" check compares ranks.
PLAN_CATALOG: Dict[str, PlanTier] = {
    plan.key: plan
    for plan in (
        PlanTier(
            key="starter",
            name="Starter",
            rank=0,
            product_limit=70,
            collection_limit=0,
            language_limit=1,
            token_policy=TokenPolicy.NONE,
            price_usd=9.99,
            providers_allowed=("deepseek", "llama"),
        ),
        PlanTier(
            key="professional",
            name="Professional",
            rank=1,
            product_limit=70,
            collection_limit=20,
            language_limit=1,
            token_policy=TokenPolicy.METERED,
            price_usd=19.99,
            providers_allowed=("openai", "llama", "deepseek"),
        ),
        PlanTier(
            key="professional plus",
            name="Professional Plus",
            rank=2,
            product_limit=200,
            collection_limit=20,
            language_limit=2,
            token_policy=TokenPolicy.METERED,
            price_usd=29.99,
            providers_allowed=("openai", "llama", "deepseek"),
        ),
        PlanTier(
            key="growth",
            name="Growth",
            rank=3,
            product_limit=450,
            collection_limit=40,
            language_limit=3,
            token_policy=TokenPolicy.METERED,
            price_usd=35.99,
            providers_allowed=("claude", "openai", "gemini"),
        ),
        PlanTier(
            key="growth plus",
            name="Growth Plus",
            rank=4,
            product_limit=450,
            collection_limit=40,
            language_limit=3,
            token_policy=TokenPolicy.METERED,
            price_usd=49.99,
            providers_allowed=("claude", "openai", "gemini"),
        ),
        PlanTier(
            key="growth extra",
            name="Growth Extra",
            rank=5,
            product_limit=750,
            collection_limit=999,
            language_limit=6,
            token_policy=TokenPolicy.INCLUDED,
            price_usd=99.99,
            included_tokens=100_000_000,
            providers_allowed=("claude", "openai", "gemini", "llama"),
        ),
        PlanTier(
            key="enterprise",
            name="Enterprise",
            rank=6,
            product_limit=1200,
            collection_limit=999,
            language_limit=10,
            token_policy=TokenPolicy.INCLUDED,
            price_usd=179.99,
            included_tokens=300_000_000,
            providers_allowed=("claude", "openai", "gemini", "deepseek", "llama"),
        ),
    )
}

LOWEST_PLAN_KEY = "starter"

DEFAULT_MODELS: Dict[str, List[str]] = {
    "openai": ["openai/gpt-4o-mini", "openai/o3-mini"],
    "claude": ["anthropic/claude-3.5-sonnet", "anthropic/claude-3-haiku"],
    "gemini": ["google/gemini-1.5-flash", "google/gemini-1.5-pro"],
    "deepseek": ["deepseek/deepseek-chat"],
    "llama": ["meta-llama/llama-3.1-8b-instruct", "meta-llama/llama-3.1-70b-instruct"],
}

_SQUASHED_KEYS = {key.replace(" ", ""): key for key in PLAN_CATALOG}


def resolve_plan_key(value: Optional[str]) -> Optional[str]:
    """Normalize a plan name or key; None if it matches no plan."""
    key = str(value or "").strip().lower().replace("_", " ").replace("-", " ")
    key = " ".join(key.split())
    if not key:
        return None
    if key in PLAN_CATALOG:
        return key
    return _SQUASHED_KEYS.get(key.replace(" ", ""))


def get_plan_limits(plan_key: Optional[str]) -> PlanTier:
    """Limits for a plan; unknown keys fall back to the lowest tier."""
    key = resolve_plan_key(plan_key)
    if key is None:
        logger.warning(
            "[plans] unknown plan key, using lowest tier",
            extra={"plan_key": plan_key, "fallback_plan": LOWEST_PLAN_KEY},
        )
        return PLAN_CATALOG[LOWEST_PLAN_KEY]
    return PLAN_CATALOG[key]


def plan_rank(plan_key: Optional[str]) -> int:
    return get_plan_limits(plan_key).rank


def is_plan_at_least(plan_key: Optional[str], minimum_plan_key: str) -> bool:
    return plan_rank(plan_key) >= plan_rank(minimum_plan_key)


def plans_by_rank() -> List[PlanTier]:
    return sorted(PLAN_CATALOG.values(), key=lambda plan: plan.rank)


def next_plan_for_limit(count: int, limit_field: str = "product_limit") -> Optional[PlanTier]:
    """
    Cheapest plan whose limit covers `count`.

    Args:
        count: Number of items the user selected
        limit_field: PlanTier attribute to compare (product_limit,
            collection_limit, language_limit)

    Returns:
        The lowest-ranked plan that fits, or None if no plan does
    """
    for plan in plans_by_rank():
        if getattr(plan, limit_field) >= count:
            return plan
    return None


def allowed_models_for_plan(plan_key: Optional[str]) -> List[str]:
    plan = get_plan_limits(plan_key)
    models: List[str] = []
    for vendor in plan.providers_allowed:
        models.extend(DEFAULT_MODELS.get(vendor, []))
    return models


def vendor_from_model(model: Optional[str]) -> str:
    vendor = str(model or "").split("/")[0].lower()
    if vendor == "anthropic":
        return "claude"
    if vendor == "google":
        return "gemini"
    if vendor in ("meta-llama", "llama", "meta"):
        return "llama"
    return vendor
