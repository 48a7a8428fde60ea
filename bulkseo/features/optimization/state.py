"""
Local view of the catalog during and after an apply.

Two explicit steps: merge() applies confirmed languages optimistically,
and a scheduled reload later reconciles against the durable source.
Neither step ever removes a language.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Union

from bulkseo.models.entity import OptimizableEntity, OptimizationSummary, normalize_languages


logger = logging.getLogger(__name__)

ReloadLoader = Callable[[], Union[Iterable[OptimizableEntity], Awaitable[Iterable[OptimizableEntity]]]]


@dataclass(frozen=True)
class AppliedEntity:
    entity_id: str
    languages: FrozenSet[str]
    ai_enhanced: bool
    at: datetime


@dataclass
class ReconcileReport:
    confirmed: List[str] = field(default_factory=list)
    # entity id -> languages applied locally that the reload did not show yet
    unconfirmed: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    @property
    def settled(self) -> bool:
        return not self.unconfirmed and not self.missing


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class CatalogState:
    """Ordered entities keyed by id, plus what this session applied to them."""

    def __init__(self, entities: Iterable[OptimizableEntity] = ()):
        self._entities: Dict[str, OptimizableEntity] = {entity.id: entity for entity in entities}
        self._expected: Dict[str, FrozenSet[str]] = {}

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def get(self, entity_id: str) -> Optional[OptimizableEntity]:
        return self._entities.get(entity_id)

    @property
    def entities(self) -> List[OptimizableEntity]:
        return list(self._entities.values())

    def merge(self, applied: Iterable[AppliedEntity]) -> List[OptimizableEntity]:
        """Optimistic update; unknown ids are ignored."""
        updated = []
        for item in applied:
            entity = self._entities.get(item.entity_id)
            if entity is None:
                logger.debug("[state] merge skipped unknown entity", extra={"entity_id": item.entity_id})
                continue
            entity = entity.with_optimization(item.languages, ai_enhanced=item.ai_enhanced, at=item.at)
            self._entities[item.entity_id] = entity
            self._expected[item.entity_id] = self._expected.get(item.entity_id, frozenset()) | normalize_languages(item.languages)
            updated.append(entity)
        return updated

    def reconcile(self, reloaded: Iterable[OptimizableEntity]) -> ReconcileReport:
        """Fold a reload into the local view. Languages are unioned, never dropped."""
        report = ReconcileReport()
        seen = set()
        for fresh in reloaded:
            seen.add(fresh.id)
            local = self._entities.get(fresh.id)
            if local is None:
                self._entities[fresh.id] = fresh
                continue

            local_summary = local.optimization_summary
            fresh_summary = fresh.optimization_summary
            self._entities[fresh.id] = fresh.model_copy(
                update={
                    "optimization_summary": OptimizationSummary(
                        optimized_languages=local_summary.optimized_languages | fresh_summary.optimized_languages,
                        ai_enhanced=local_summary.ai_enhanced or fresh_summary.ai_enhanced,
                        last_optimized_at=_later(local_summary.last_optimized_at, fresh_summary.last_optimized_at),
                    )
                }
            )

            expected = self._expected.get(fresh.id)
            if expected is None:
                continue
            outstanding = expected - fresh_summary.optimized_languages
            if outstanding:
                report.unconfirmed[fresh.id] = frozenset(outstanding)
            else:
                report.confirmed.append(fresh.id)

        report.missing = [entity_id for entity_id in self._expected if entity_id not in seen]
        if not report.settled:
            logger.warning(
                "[state] reload did not confirm every applied language",
                extra={"unconfirmed": sorted(report.unconfirmed), "missing": report.missing},
            )
        return report

    def schedule_reload(self, loader: ReloadLoader, delay: float) -> "asyncio.Task[Optional[ReconcileReport]]":
        """Re-fetch after `delay` seconds and reconcile. Must run inside an event loop."""

        async def _reload() -> Optional[ReconcileReport]:
            await asyncio.sleep(max(0.0, delay))
            try:
                reloaded = loader()
                if inspect.isawaitable(reloaded):
                    reloaded = await reloaded
            except Exception as exc:
                logger.error("[state] reload failed", extra={"error": str(exc), "error_type": type(exc).__name__})
                return None
            return self.reconcile(reloaded)

        return asyncio.get_running_loop().create_task(_reload())
