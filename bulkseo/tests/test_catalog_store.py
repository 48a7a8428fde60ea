"""
Tests for the local catalog mirror.
"""
from datetime import datetime, timezone

import pytest

from bulkseo.core.errors import NotFoundError
from bulkseo.features.catalog.service import (
    build_optimization_summary,
    get_entities,
    record_optimization,
    sync_entities,
    upsert_entity,
)
from bulkseo.tests.mocks import make_entity


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_sync_keeps_listing_order(db, shop):
    sync_entities(shop, [make_entity("b"), make_entity("a"), make_entity("c", kind="collection")])
    assert [entity.id for entity in get_entities(shop)] == ["b", "a", "c"]
    assert get_entities(shop)[2].kind.value == "COLLECTION"


def test_get_entities_follows_requested_ids(db, shop):
    sync_entities(shop, [make_entity("a"), make_entity("b"), make_entity("c")])
    assert [entity.id for entity in get_entities(shop, ["c", "missing", "a"])] == ["c", "a"]


def test_record_optimization_is_monotonic(db, shop):
    upsert_entity(shop, make_entity("a", ["en"]))

    record_optimization(shop, "a", ["de"], ai_enhanced=True, at=NOW)
    entity = record_optimization(shop, "a", ["DE"], ai_enhanced=False, at=NOW)

    assert entity.optimized_languages == frozenset({"en", "de"})
    stored = get_entities(shop, ["a"])[0]
    assert stored.optimized_languages == frozenset({"en", "de"})
    assert stored.optimization_summary.ai_enhanced is True
    assert stored.optimization_summary.last_optimized_at == NOW


def test_resync_preserves_optimization_state(db, shop):
    upsert_entity(shop, make_entity("a"))
    record_optimization(shop, "a", ["fr"], at=NOW)

    upsert_entity(shop, make_entity("a", title="Renamed"))

    stored = get_entities(shop, ["a"])[0]
    assert stored.title == "Renamed"
    assert stored.optimized_languages == frozenset({"fr"})


def test_record_unknown_entity(db, shop):
    with pytest.raises(NotFoundError):
        record_optimization(shop, "ghost", ["en"])


def test_summary_line():
    assert build_optimization_summary(make_entity("a")) == "⚠️ Not Optimized"
    entity = make_entity("a").with_optimization(["en", "de"], ai_enhanced=True, at=NOW)
    assert build_optimization_summary(entity) == "✅ Optimized | Languages: DE, EN | Last: 2026-03-01"
