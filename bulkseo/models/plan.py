"""
bulkseo/models/plan.py

Plan tier model.

Plans are capability tiers ordered by rank; every "at least" comparison
goes through rank, never through the key.
"""

from enum import Enum
from typing import Tuple
from pydantic import BaseModel, ConfigDict


class TokenPolicy(str, Enum):
    """How token-funded features are paid for on a plan."""
    NONE = "NONE"          # no token-funded features
    METERED = "METERED"    # debited from the purchased balance
    INCLUDED = "INCLUDED"  # covered by the plan, never debited


class PlanTier(BaseModel):
    """
    PlanTier represents one subscription level and its limits.

    Limits of 999 on collections are the practical "unlimited" used by the
    catalog, not a sentinel.
    """
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    rank: int
    product_limit: int
    collection_limit: int
    language_limit: int
    token_policy: TokenPolicy
    price_usd: float
    included_tokens: int = 0
    providers_allowed: Tuple[str, ...] = ()
