"""
bulkseo/models/ledger.py

Token balance snapshot and the records the apply phase produces.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class LedgerSnapshot(BaseModel):
    """Token balance source payload: {balance, totalPurchased, totalUsed}."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    balance: int = Field(default=0, ge=0)
    total_purchased: int = Field(default=0, ge=0)
    total_used: int = Field(default=0, ge=0)


@dataclass
class Reservation:
    """Amount held back from the balance until the apply commit settles."""
    reservation_id: str
    amount: int
    feature: Optional[str] = None
    entity_id: Optional[str] = None
    status: str = "reserved"  # reserved | committed | released


@dataclass(frozen=True)
class TokenDebit:
    """A committed debit, ready to be written to the durable history."""
    entity_id: str
    feature: str
    amount: int
    languages: tuple = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
