"""
Local mirror of the shop's products and collections.

Sync writes titles and status; only record_optimization touches the
optimization columns, and it only ever adds languages.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import and_, insert, select, update

from bulkseo.core.database import catalog_entities, get_db_session
from bulkseo.core.errors import NotFoundError
from bulkseo.models.entity import (
    OptimizableEntity,
    OptimizationSummary,
    normalize_languages,
)


logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_entity(row) -> OptimizableEntity:
    return OptimizableEntity(
        id=row.entity_id,
        title=row.title,
        kind=row.kind,
        status=row.status,
        optimization_summary=OptimizationSummary(
            optimized_languages=row.optimized_languages or (),
            ai_enhanced=bool(row.ai_enhanced),
            last_optimized_at=_aware(row.last_optimized_at),
        ),
    )


def _where_entity(shop: str, entity_id: str):
    return and_(catalog_entities.c.shop == shop, catalog_entities.c.entity_id == entity_id)


def upsert_entity(shop: str, entity: OptimizableEntity, position: int = 0) -> OptimizableEntity:
    """Insert or refresh a synced entity. Existing optimization state is kept."""
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        existing = session.execute(
            select(catalog_entities).where(_where_entity(shop, entity.id))
        ).first()
        if existing:
            session.execute(
                update(catalog_entities)
                .where(_where_entity(shop, entity.id))
                .values(
                    kind=entity.kind.value,
                    title=entity.title,
                    status=entity.status.value,
                    position=position,
                    synced_at=now,
                )
            )
        else:
            summary = entity.optimization_summary
            session.execute(
                insert(catalog_entities).values(
                    shop=shop,
                    entity_id=entity.id,
                    kind=entity.kind.value,
                    title=entity.title,
                    status=entity.status.value,
                    optimized_languages=sorted(summary.optimized_languages),
                    ai_enhanced=summary.ai_enhanced,
                    last_optimized_at=summary.last_optimized_at,
                    position=position,
                    synced_at=now,
                )
            )
        row = session.execute(
            select(catalog_entities).where(_where_entity(shop, entity.id))
        ).first()
        return _row_to_entity(row)


def sync_entities(shop: str, entities: Sequence[OptimizableEntity]) -> List[OptimizableEntity]:
    """Upsert a batch in listing order."""
    synced = [upsert_entity(shop, entity, position=index) for index, entity in enumerate(entities)]
    logger.info("[catalog] synced", extra={"shop": shop, "count": len(synced)})
    return synced


def get_entities(shop: str, ids: Optional[Iterable[str]] = None) -> List[OptimizableEntity]:
    """
    Entities for a shop.

    With ids, results follow the order of ids and unknown ids are dropped;
    without, results follow the sync position.
    """
    with get_db_session() as session:
        query = select(catalog_entities).where(catalog_entities.c.shop == shop)
        if ids is not None:
            ids = list(ids)
            query = query.where(catalog_entities.c.entity_id.in_(ids))
        rows = session.execute(query.order_by(catalog_entities.c.position, catalog_entities.c.entity_id)).fetchall()

    entities = [_row_to_entity(row) for row in rows]
    if ids is None:
        return entities
    by_id = {entity.id: entity for entity in entities}
    return [by_id[entity_id] for entity_id in ids if entity_id in by_id]


def record_optimization(
    shop: str,
    entity_id: str,
    languages: Iterable[str],
    *,
    ai_enhanced: bool = False,
    at: Optional[datetime] = None,
) -> OptimizableEntity:
    """
    Add confirmed languages to an entity's optimization state.

    Raises:
        NotFoundError: If the entity was never synced
    """
    at = at or datetime.now(timezone.utc)
    with get_db_session() as session:
        row = session.execute(
            select(catalog_entities).where(_where_entity(shop, entity_id))
        ).first()
        if not row:
            raise NotFoundError(f"Entity {entity_id} not found for shop {shop}")

        current = _row_to_entity(row)
        updated = current.with_optimization(languages, ai_enhanced=ai_enhanced, at=at)
        summary = updated.optimization_summary
        session.execute(
            update(catalog_entities)
            .where(_where_entity(shop, entity_id))
            .values(
                optimized_languages=sorted(summary.optimized_languages),
                ai_enhanced=summary.ai_enhanced,
                last_optimized_at=summary.last_optimized_at,
            )
        )

    logger.info(
        "[catalog] optimization recorded",
        extra={"shop": shop, "entity_id": entity_id, "languages": sorted(normalize_languages(languages))},
    )
    return updated


def build_optimization_summary(entity: OptimizableEntity) -> str:
    """One-line status shown next to an entity in listings."""
    summary = entity.optimization_summary
    if not summary.optimized_languages:
        return "⚠️ Not Optimized"
    languages = ", ".join(code.upper() for code in sorted(summary.optimized_languages))
    line = f"✅ Optimized | Languages: {languages}"
    if summary.last_optimized_at:
        line += f" | Last: {summary.last_optimized_at.date().isoformat()}"
    return line
