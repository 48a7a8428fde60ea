"""Tests for the bulk optimization worker CLI."""
from datetime import datetime, timezone

import pytest

from bulkseo.features.catalog.service import get_entities, sync_entities
from bulkseo.features.subscriptions.service import assign_plan
from bulkseo.features.tokens.store import credit_purchase
from bulkseo.tests.mocks import FakeGeneration, FakePersistence, make_entity, plan_restriction
from bulkseo.workers import bulk_optimize


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fakes(monkeypatch):
    generation = FakeGeneration()
    persistence = FakePersistence()
    monkeypatch.setattr(bulk_optimize, "GenerationClient", lambda: generation)
    monkeypatch.setattr(bulk_optimize, "PersistenceClient", lambda: persistence)
    # keep the bulkseo handler off capsys' temporary stdout
    monkeypatch.setattr(bulk_optimize, "configure_logging", lambda env: None)
    monkeypatch.setattr(bulk_optimize.settings, "ENTITLEMENT_API_URL", None)
    monkeypatch.setattr(bulk_optimize.settings, "TOKEN_BALANCE_API_URL", None)
    return generation, persistence


@pytest.fixture
def ready_shop(db, shop):
    assign_plan(shop, "growth", now=NOW)
    credit_purchase(shop, 5)
    sync_entities(shop, [make_entity("A", ["en"]), make_entity("B")])
    return shop


def test_generate_only(ready_shop, fakes, capsys):
    generation, persistence = fakes

    code = bulk_optimize.main(["--shop", ready_shop, "--languages", "de"])

    assert code == bulk_optimize.EXIT_OK
    assert sorted(generation.called_ids) == ["A", "B"]
    assert persistence.calls == []
    assert "successful=2" in capsys.readouterr().out


def test_generate_and_apply(ready_shop, fakes, capsys):
    generation, persistence = fakes

    code = bulk_optimize.main(
        ["--shop", ready_shop, "--languages", "de", "--entities", "B", "--apply", "--settle-delay", "0"]
    )

    assert code == bulk_optimize.EXIT_OK
    assert [call["entity_id"] for call in persistence.calls] == ["B"]
    assert get_entities(ready_shop, ["B"])[0].optimized_languages == frozenset({"de"})
    assert "tokens_used=2000" in capsys.readouterr().out


def test_abort_exit_code(ready_shop, fakes, capsys):
    generation, _ = fakes
    generation.responses["A"] = plan_restriction("Growth Plus")

    code = bulk_optimize.main(["--shop", ready_shop, "--languages", "de", "--window", "1"])

    out = capsys.readouterr().out
    assert code == bulk_optimize.EXIT_ABORTED
    assert "ABORTED PLAN_RESTRICTION" in out
    assert "UPGRADE_PLAN" in out


def test_unknown_entity_is_an_error(ready_shop, fakes, capsys):
    code = bulk_optimize.main(["--shop", ready_shop, "--languages", "de", "--entities", "nope"])
    assert code == bulk_optimize.EXIT_ERROR
    assert "not_found" in capsys.readouterr().out
