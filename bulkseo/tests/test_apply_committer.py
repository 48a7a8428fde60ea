"""
Tests for the apply phase: token settlement, monotonic catalog state and
the scheduled reconcile.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from bulkseo.core.errors import CollaboratorError, InsufficientTokensError
from bulkseo.features.optimization.committer import ApplyPhaseCommitter
from bulkseo.features.optimization.orchestrator import BatchOrchestrator
from bulkseo.features.optimization.state import CatalogState
from bulkseo.features.tokens.ledger import TokenLedger
from bulkseo.models.error_class import ErrorKind
from bulkseo.models.job import BatchRun, GenerationJob, JobState
from bulkseo.models.ledger import LedgerSnapshot
from bulkseo.models.plan import TokenPolicy
from bulkseo.tests.mocks import FakeGeneration, FakePersistence, make_entitlement, make_entity, plan_restriction


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _generate(entities, languages, generation=None, balance=1_000_000, policy=TokenPolicy.METERED):
    ledger = TokenLedger(LedgerSnapshot(balance=balance, total_purchased=balance), policy)
    job = GenerationJob(ordered_entities=entities, languages_requested=languages)
    run = await BatchOrchestrator(generation or FakeGeneration()).run(job, make_entitlement(), ledger, now=NOW)
    return run, ledger


class TestScenarioB:
    @pytest.mark.asyncio
    async def test_growth_two_entities_gain_de(self):
        """Growth plan, A has en, B has nothing, request de: both gain de, 2 x 2000 used."""
        entities = [make_entity("A", ["en"]), make_entity("B")]
        run, ledger = await _generate(entities, ["de"])
        assert run.state == JobState.COMPLETED
        before = ledger.snapshot()

        state = CatalogState(entities)
        persistence = FakePersistence()
        report = await ApplyPhaseCommitter(persistence, settle_delay=0).apply(run, ledger, state=state, now=NOW)

        assert state.get("A").optimized_languages == frozenset({"en", "de"})
        assert state.get("B").optimized_languages == frozenset({"de"})
        assert state.get("A").optimization_summary.ai_enhanced is True
        assert state.get("B").optimization_summary.last_optimized_at == NOW
        assert report.snapshot.total_used - before.total_used == 2 * 2000
        assert report.snapshot.balance == before.balance - 4000
        assert report.tokens_used == 4000
        assert sorted(report.applied_ids) == ["A", "B"]
        assert report.failures == {}

    @pytest.mark.asyncio
    async def test_persistence_receives_seo_payload(self):
        entities = [make_entity("A")]
        run, ledger = await _generate(entities, ["de"])
        persistence = FakePersistence()

        await ApplyPhaseCommitter(persistence, settle_delay=0).apply(run, ledger, entities=entities, now=NOW)

        call = persistence.calls[0]
        assert call["entity_id"] == "A"
        assert call["results"] == [{"language": "de", "seo": {"title": "A de"}}]
        assert call["options"]["enhanced"] is True


class TestRejection:
    @pytest.mark.asyncio
    async def test_aborted_run_is_not_applied(self):
        entities = [make_entity(f"p{i}") for i in range(1, 4)]
        run, ledger = await _generate(entities, ["en"], FakeGeneration(responses={"p1": plan_restriction()}))
        assert run.state == JobState.ABORTED
        persistence = FakePersistence()

        report = await ApplyPhaseCommitter(persistence).apply(run, ledger, entities=entities)

        assert report.rejected_reason
        assert persistence.calls == []
        assert report.applied == []
        assert report.snapshot.total_used == 0

    @pytest.mark.asyncio
    async def test_unfinished_run_state_rejected(self):
        run = BatchRun(job_id="j1", state=JobState.RUNNING)
        ledger = TokenLedger(LedgerSnapshot(balance=10))
        report = await ApplyPhaseCommitter(FakePersistence()).apply(run, ledger)
        assert "RUNNING" in report.rejected_reason


class TestFailures:
    @pytest.mark.asyncio
    async def test_persistence_failure_releases_reservation_and_continues(self):
        entities = [make_entity(f"p{i}") for i in range(1, 5)]
        run, ledger = await _generate(entities, ["en"], balance=100_000)
        persistence = FakePersistence(
            failures={
                "p2": CollaboratorError("storefront down", status=503),
                "p3": {"ok": False, "error": "conflict"},
            }
        )
        state = CatalogState(entities)

        report = await ApplyPhaseCommitter(persistence, window_size=2, settle_delay=0).apply(run, ledger, state=state, now=NOW)

        assert sorted(report.applied_ids) == ["p1", "p4"]
        assert set(report.failures) == {"p2", "p3"}
        assert report.failures["p3"].message == "conflict"
        assert report.snapshot.balance == 100_000 - 2 * 2000
        assert report.snapshot.total_used == 4000
        assert state.get("p2").optimized_languages == frozenset()
        assert len(persistence.calls) == 4

    @pytest.mark.asyncio
    async def test_insufficient_balance_at_apply_is_per_entity(self):
        entities = [make_entity("p1"), make_entity("p2")]
        run, _ = await _generate(entities, ["en"])
        # Balance dropped between generate and apply
        ledger = TokenLedger(LedgerSnapshot(balance=2000, total_purchased=2000))
        persistence = FakePersistence()

        report = await ApplyPhaseCommitter(persistence, settle_delay=0).apply(run, ledger, entities=entities, now=NOW)

        assert report.applied_ids == ["p1"]
        assert report.failures["p2"].kind == ErrorKind.INSUFFICIENT_TOKENS
        assert [call["entity_id"] for call in persistence.calls] == ["p1"]
        assert report.snapshot.balance == 0

    @pytest.mark.asyncio
    async def test_only_confirmed_languages_are_charged(self):
        entities = [make_entity("p1")]
        run, ledger = await _generate(entities, ["en", "de"])
        persistence = FakePersistence(failures={"p1": {"ok": True, "appliedLanguages": ["de"]}})
        state = CatalogState(entities)

        report = await ApplyPhaseCommitter(persistence, settle_delay=0).apply(run, ledger, state=state, now=NOW)

        assert report.tokens_used == 2000
        assert report.debits[0].languages == ("de",)
        assert state.get("p1").optimized_languages == frozenset({"de"})

    @pytest.mark.asyncio
    async def test_included_plan_applies_without_debits(self):
        entities = [make_entity("p1")]
        run, ledger = await _generate(entities, ["en"], balance=0, policy=TokenPolicy.INCLUDED)

        report = await ApplyPhaseCommitter(FakePersistence(), settle_delay=0).apply(run, ledger, entities=entities, now=NOW)

        assert report.applied_ids == ["p1"]
        assert report.debits == []
        assert report.snapshot.total_used == 0


class TestMonotonicityAndReload:
    @pytest.mark.asyncio
    async def test_languages_never_shrink_across_applies(self):
        entities = [make_entity("p1", ["en"])]
        state = CatalogState(entities)
        for languages in (["de"], ["fr"], ["de", "fr"]):
            run, ledger = await _generate(state.entities, languages)
            previous = state.get("p1").optimized_languages
            await ApplyPhaseCommitter(FakePersistence(), settle_delay=0).apply(run, ledger, state=state, now=NOW)
            assert previous <= state.get("p1").optimized_languages
        assert state.get("p1").optimized_languages == frozenset({"en", "de", "fr"})

    @pytest.mark.asyncio
    async def test_reload_scheduled_after_settle_delay(self):
        entities = [make_entity("A", ["en"])]
        run, ledger = await _generate(entities, ["de"])
        state = CatalogState(entities)
        reloads = []

        def reload():
            reloads.append(1)
            # Storefront has not caught up yet
            return [make_entity("A", ["en"])]

        report = await ApplyPhaseCommitter(FakePersistence(), settle_delay=0.01).apply(
            run, ledger, state=state, reload=reload, now=NOW
        )
        assert reloads == []

        reconciled = await report.reload_task
        assert reloads == [1]
        assert reconciled.unconfirmed == {"A": frozenset({"de"})}
        # optimistic languages survive a stale reload
        assert state.get("A").optimized_languages == frozenset({"en", "de"})

    @pytest.mark.asyncio
    async def test_async_reload_confirms(self):
        entities = [make_entity("A")]
        run, ledger = await _generate(entities, ["de"])
        state = CatalogState(entities)

        async def reload():
            await asyncio.sleep(0)
            return [make_entity("A", ["de"])]

        report = await ApplyPhaseCommitter(FakePersistence(), settle_delay=0).apply(run, ledger, state=state, reload=reload, now=NOW)
        reconciled = await report.reload_task
        assert reconciled.settled
        assert reconciled.confirmed == ["A"]

    @pytest.mark.asyncio
    async def test_failing_reload_is_logged_not_raised(self):
        entities = [make_entity("A")]
        run, ledger = await _generate(entities, ["de"])

        def reload():
            raise RuntimeError("catalog unavailable")

        report = await ApplyPhaseCommitter(FakePersistence(), settle_delay=0).apply(
            run, ledger, entities=entities, reload=reload, now=NOW
        )
        assert await report.reload_task is None


class RecordingAccount:
    """Durable account double; refuses holds beyond `balance`."""

    def __init__(self, balance):
        self.balance = balance
        self.events = []

    def hold(self, reservation):
        if reservation.amount > self.balance:
            raise InsufficientTokensError(required=reservation.amount, available=self.balance)
        self.balance -= reservation.amount
        self.events.append(("hold", reservation.entity_id, reservation.amount))

    def release(self, reservation):
        self.balance += reservation.amount
        self.events.append(("release", reservation.entity_id, reservation.amount))

    def settle(self, reservation, debit):
        self.balance += reservation.amount - (debit.amount if debit else 0)
        self.events.append(("settle", reservation.entity_id, debit.amount if debit else 0))

    def snapshot(self):
        return LedgerSnapshot(balance=self.balance)


class TestDurableAccount:
    @pytest.mark.asyncio
    async def test_holds_settle_or_release_per_entity(self):
        entities = [make_entity("p1"), make_entity("p2")]
        run, ledger = await _generate(entities, ["en", "de"])
        account = RecordingAccount(balance=1_000_000)
        persistence = FakePersistence(
            failures={
                "p1": {"ok": True, "appliedLanguages": ["de"]},
                "p2": CollaboratorError("storefront down", status=503),
            }
        )

        report = await ApplyPhaseCommitter(persistence, settle_delay=0).apply(
            run, ledger, entities=entities, now=NOW, account=account
        )

        assert account.events == [
            ("hold", "p1", 4000),
            ("hold", "p2", 4000),
            ("settle", "p1", 2000),
            ("release", "p2", 4000),
        ]
        assert report.snapshot == LedgerSnapshot(balance=1_000_000 - 2000)

    @pytest.mark.asyncio
    async def test_refused_hold_skips_persist(self):
        entities = [make_entity("p1"), make_entity("p2")]
        run, ledger = await _generate(entities, ["en"])
        persistence = FakePersistence()

        report = await ApplyPhaseCommitter(persistence, settle_delay=0).apply(
            run, ledger, entities=entities, now=NOW, account=RecordingAccount(balance=2000)
        )

        assert report.applied_ids == ["p1"]
        assert report.failures["p2"].kind == ErrorKind.INSUFFICIENT_TOKENS
        assert report.failures["p2"].available == 0
        assert [call["entity_id"] for call in persistence.calls] == ["p1"]
        # the in-memory reservation for p2 was handed back
        assert ledger.reserved == 0

    @pytest.mark.asyncio
    async def test_included_plan_never_touches_account(self):
        entities = [make_entity("p1")]
        run, ledger = await _generate(entities, ["en"], policy=TokenPolicy.INCLUDED)
        account = RecordingAccount(balance=0)

        report = await ApplyPhaseCommitter(FakePersistence(), settle_delay=0).apply(
            run, ledger, entities=entities, now=NOW, account=account
        )

        assert report.applied_ids == ["p1"]
        assert account.events == []
