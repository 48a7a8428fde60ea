"""
bulkseo/models/entity.py

Catalog entities targeted for optimization.
"""

from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def normalize_languages(languages: Iterable[str]) -> FrozenSet[str]:
    """Lower-case, strip and de-duplicate language codes; blanks are dropped."""
    return frozenset(code.strip().lower() for code in languages if code and code.strip())


class EntityKind(str, Enum):
    PRODUCT = "PRODUCT"
    COLLECTION = "COLLECTION"


class EntityStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DRAFT = "DRAFT"
    ARCHIVED = "ARCHIVED"


class OptimizationSummary(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    optimized_languages: FrozenSet[str] = frozenset()
    ai_enhanced: bool = False
    last_optimized_at: Optional[datetime] = None

    @field_validator("optimized_languages", mode="before")
    @classmethod
    def _normalize(cls, value):
        if value is None:
            return frozenset()
        return normalize_languages(value)


class OptimizableEntity(BaseModel):
    """
    A product or collection synced from the store.

    Only the apply phase changes optimization_summary, and only by adding
    languages.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    title: str
    kind: EntityKind = EntityKind.PRODUCT
    status: EntityStatus = EntityStatus.ACTIVE
    optimization_summary: OptimizationSummary = Field(default_factory=OptimizationSummary)

    @field_validator("kind", "status", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value

    @property
    def optimized_languages(self) -> FrozenSet[str]:
        return self.optimization_summary.optimized_languages

    @property
    def label(self) -> str:
        return self.title or self.id

    def with_optimization(self, languages: Iterable[str], *, ai_enhanced: bool, at: datetime) -> "OptimizableEntity":
        """Return a copy with languages added (never removed)."""
        summary = self.optimization_summary
        merged = summary.optimized_languages | normalize_languages(languages)
        return self.model_copy(
            update={
                "optimization_summary": OptimizationSummary(
                    optimized_languages=merged,
                    ai_enhanced=summary.ai_enhanced or ai_enhanced,
                    last_optimized_at=at,
                )
            }
        )
