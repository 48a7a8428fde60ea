"""
Token pricing: feature costs and purchase conversion.

Costs are charged per entity-language actually applied, so an entity that
gains two languages costs twice its feature's per-language amount.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR
from typing import Dict, Union

from bulkseo.core.errors import ValidationError

# Purchase settings (USD)
MINIMUM_PURCHASE_USD = 5
MAXIMUM_PURCHASE_USD = 1000
PURCHASE_INCREMENT_USD = 5
PRESET_AMOUNTS_USD = (10, 20, 50, 100)

# Share of a purchase that funds model tokens, and the provider rate
TOKEN_BUDGET_SHARE = Decimal("0.30")
PROVIDER_RATE_PER_1M_USD = Decimal("0.10")

# Tokens charged per applied language, by feature
TOKEN_COSTS: Dict[str, int] = {
    "seo-product-basic": 0,
    "seo-collection-basic": 0,
    "ai-seo-product-enhanced": 2000,
    "ai-seo-collection": 1500,
    "ai-schema-advanced": 3000,
    "ai-sitemap-optimized": 5000,
}


def cost_per_language(feature: str) -> int:
    try:
        return TOKEN_COSTS[feature]
    except KeyError:
        raise ValidationError(f"Unknown feature: {feature}")


def calculate_feature_cost(feature: str, language_count: int) -> int:
    if language_count < 0:
        raise ValidationError("language_count must be >= 0")
    return cost_per_language(feature) * language_count


def is_valid_purchase_amount(usd_amount: Union[int, float, Decimal]) -> bool:
    amount = Decimal(str(usd_amount))
    if amount < MINIMUM_PURCHASE_USD or amount > MAXIMUM_PURCHASE_USD:
        return False
    return amount % PURCHASE_INCREMENT_USD == 0


def tokens_for_purchase(usd_amount: Union[int, float, Decimal]) -> int:
    """$10 -> $3 token budget -> $3 / $0.10 per 1M = 30M tokens."""
    budget = Decimal(str(usd_amount)) * TOKEN_BUDGET_SHARE
    tokens = budget / PROVIDER_RATE_PER_1M_USD * 1_000_000
    return int(tokens.to_integral_value(rounding=ROUND_FLOOR))
