"""
Language diff: which requested languages an entity still needs.
"""
from dataclasses import dataclass
from typing import FrozenSet, Iterable

from bulkseo.models.entity import OptimizableEntity, normalize_languages


@dataclass(frozen=True)
class LanguageDiff:
    entity_id: str
    new_languages: FrozenSet[str]
    projected_total: int
    language_limit: int

    @property
    def limit_exceeded(self) -> bool:
        return self.projected_total > self.language_limit

    @property
    def needs_work(self) -> bool:
        return bool(self.new_languages)


def language_diff(entity: OptimizableEntity, requested: Iterable[str], language_limit: int) -> LanguageDiff:
    """
    new_languages = requested - optimized; projected_total = |optimized | requested|.

    An empty new_languages means the entity is skipped with no call.
    """
    requested = normalize_languages(requested)
    optimized = entity.optimized_languages
    return LanguageDiff(
        entity_id=entity.id,
        new_languages=frozenset(requested - optimized),
        projected_total=len(optimized | requested),
        language_limit=language_limit,
    )
