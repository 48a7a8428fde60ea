"""
Apply phase: persist accepted results and settle their token cost.

Explicit and separate from generation. Per accepted entity: reserve the
cost (and hold it in the durable account when one is given), persist, then
commit on confirmation or release on failure. A failed entity never stops
the others.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence

from bulkseo.core.config import settings
from bulkseo.core.errors import InsufficientTokensError
from bulkseo.core.logging import bind_job_id
from bulkseo.features.entitlements.service import feature_for
from bulkseo.features.optimization.classifier import classify_failure, failure_from_exception
from bulkseo.features.optimization.orchestrator import ProgressCallback, emit_progress
from bulkseo.features.optimization.state import AppliedEntity, CatalogState, ReconcileReport, ReloadLoader
from bulkseo.features.tokens.ledger import TokenLedger
from bulkseo.features.tokens.pricing import cost_per_language
from bulkseo.models.entity import EntityKind, OptimizableEntity, normalize_languages
from bulkseo.models.error_class import ErrorClass, GenericFailure, InsufficientTokens
from bulkseo.models.job import BatchProgress, BatchRun, GenerationResult, JobState
from bulkseo.models.ledger import LedgerSnapshot, Reservation, TokenDebit


logger = logging.getLogger(__name__)


class PersistenceCollaborator(Protocol):
    async def apply(self, entity_id: str, results: Sequence[Dict[str, Any]], options: Dict[str, Any]) -> Dict[str, Any]:
        ...


class TokenAccount(Protocol):
    """Durable balance that backs the in-memory ledger during apply."""

    def hold(self, reservation: Reservation) -> Any:
        ...

    def release(self, reservation: Reservation) -> Any:
        ...

    def settle(self, reservation: Reservation, debit: Optional[TokenDebit]) -> Any:
        ...

    def snapshot(self) -> LedgerSnapshot:
        ...


@dataclass
class ApplyReport:
    job_id: str
    applied: List[AppliedEntity] = field(default_factory=list)
    failures: Dict[str, ErrorClass] = field(default_factory=dict)
    debits: List[TokenDebit] = field(default_factory=list)
    snapshot: Optional[LedgerSnapshot] = None
    reload_task: Optional["asyncio.Task[Optional[ReconcileReport]]"] = None
    rejected_reason: Optional[str] = None

    @property
    def applied_ids(self) -> List[str]:
        return [item.entity_id for item in self.applied]

    @property
    def tokens_used(self) -> int:
        return sum(debit.amount for debit in self.debits)


class ApplyPhaseCommitter:
    """Commits the SUCCESS results of a COMPLETED BatchRun."""

    def __init__(
        self,
        persistence: PersistenceCollaborator,
        *,
        window_size: Optional[int] = None,
        settle_delay: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.persistence = persistence
        self.window_size = window_size or settings.BATCH_WINDOW_SIZE
        self.settle_delay = settings.APPLY_SETTLE_DELAY_SECONDS if settle_delay is None else settle_delay
        self.on_progress = on_progress

    async def apply(
        self,
        run: BatchRun,
        ledger: TokenLedger,
        *,
        entities: Optional[Iterable[OptimizableEntity]] = None,
        state: Optional[CatalogState] = None,
        reload: Optional[ReloadLoader] = None,
        now: Optional[datetime] = None,
        account: Optional[TokenAccount] = None,
    ) -> ApplyReport:
        """
        With an `account`, each entity's cost is held durably before its
        persist call and settled or released afterwards; an entity whose hold
        is refused fails with InsufficientTokens and is never persisted.
        """
        with bind_job_id(run.job_id):
            return await self._apply(run, ledger, entities, state, reload, now, account)

    async def _apply(
        self,
        run: BatchRun,
        ledger: TokenLedger,
        entities: Optional[Iterable[OptimizableEntity]],
        state: Optional[CatalogState],
        reload: Optional[ReloadLoader],
        now: Optional[datetime],
        account: Optional[TokenAccount],
    ) -> ApplyReport:
        report = ApplyReport(job_id=run.job_id)
        if run.state != JobState.COMPLETED:
            report.rejected_reason = f"Run is {run.state.value}; only COMPLETED runs can be applied"
            report.snapshot = ledger.snapshot()
            logger.warning("[committer] REJECTED", extra={"state": run.state.value})
            return report

        if state is None:
            state = CatalogState(entities or ())
        at = now or datetime.now(timezone.utc)
        accepted = run.accepted
        total = len(accepted)
        processed = 0
        logger.info("[committer] APPLYING", extra={"entities": total})

        for start in range(0, total, self.window_size):
            window = accepted[start:start + self.window_size]
            held = []
            for result in window:
                reservation = self._reserve(result, run, state, ledger, report, account)
                if reservation is not None:
                    held.append((result, reservation))

            confirmations = await asyncio.gather(
                *(self._persist(result, run) for result, _ in held)
            )
            for (result, reservation), (applied, error) in zip(held, confirmations):
                if error is not None:
                    ledger.release(reservation)
                    if account is not None and reservation.amount:
                        account.release(reservation)
                    report.failures[result.entity_id] = error
                    continue
                debit = self._settle(result, reservation, applied, ledger)
                if account is not None and reservation.amount:
                    account.settle(reservation, debit)
                if debit is not None:
                    report.debits.append(debit)
                report.applied.append(
                    AppliedEntity(entity_id=result.entity_id, languages=applied, ai_enhanced=run.enhanced, at=at)
                )

            processed += len(window)
            emit_progress(
                self.on_progress,
                BatchProgress(processed_count=processed, total_count=total, current_label=window[-1].title or window[-1].entity_id),
            )

        state.merge(report.applied)
        report.snapshot = account.snapshot() if account is not None else ledger.snapshot()
        if reload is not None and report.applied:
            report.reload_task = state.schedule_reload(reload, self.settle_delay)

        logger.info(
            "[committer] APPLIED",
            extra={
                "applied": len(report.applied),
                "failed": len(report.failures),
                "tokens_used": report.tokens_used,
                "balance_after": report.snapshot.balance,
            },
        )
        return report

    def _feature(self, result: GenerationResult, run: BatchRun, state: CatalogState) -> str:
        if result.feature:
            return result.feature
        entity = state.get(result.entity_id)
        return feature_for(entity.kind if entity else EntityKind.PRODUCT, run.enhanced)

    def _reserve(
        self,
        result: GenerationResult,
        run: BatchRun,
        state: CatalogState,
        ledger: TokenLedger,
        report: ApplyReport,
        account: Optional[TokenAccount] = None,
    ) -> Optional[Reservation]:
        feature = self._feature(result, run, state)
        cost = cost_per_language(feature) * len(result.languages_applied)
        try:
            reservation = ledger.reserve(cost, feature=feature, entity_id=result.entity_id)
        except InsufficientTokensError as exc:
            report.failures[result.entity_id] = _insufficient(exc)
            return None
        if account is None or not reservation.amount:
            return reservation
        try:
            account.hold(reservation)
        except InsufficientTokensError as exc:
            ledger.release(reservation)
            report.failures[result.entity_id] = _insufficient(exc)
            return None
        return reservation

    async def _persist(self, result: GenerationResult, run: BatchRun):
        """One persistence call; returns (applied languages, error). Never raises."""
        submitted = result.languages_applied
        body = [{"language": content.language, "seo": content.data} for content in result.payload]
        options = {"enhanced": run.enhanced, "jobId": run.job_id}
        try:
            response = await self.persistence.apply(result.entity_id, body, options)
        except Exception as exc:
            error = classify_failure(failure_from_exception(exc))
            logger.warning(
                "[committer] persist failed",
                extra={"entity_id": result.entity_id, "error_code": error.kind.value, "error": error.message},
            )
            return frozenset(), error

        if not isinstance(response, dict) or not response.get("ok"):
            message = "Persistence did not confirm the update"
            if isinstance(response, dict):
                message = str(response.get("error") or response.get("message") or message)
            logger.warning("[committer] persist rejected", extra={"entity_id": result.entity_id, "error": message})
            return frozenset(), GenericFailure(message=message)

        confirmed = normalize_languages(response.get("appliedLanguages") or ()) & submitted
        return (confirmed or submitted), None

    def _settle(
        self,
        result: GenerationResult,
        reservation: Reservation,
        applied: FrozenSet[str],
        ledger: TokenLedger,
    ) -> Optional[TokenDebit]:
        """Commit only the cost of languages actually applied."""
        if len(applied) < len(result.languages_applied) and reservation.amount:
            ledger.release(reservation)
            cost = cost_per_language(reservation.feature) * len(applied)
            reservation = ledger.reserve(cost, feature=reservation.feature, entity_id=reservation.entity_id)
        return ledger.commit(reservation, languages=tuple(applied))


def _insufficient(exc: InsufficientTokensError) -> InsufficientTokens:
    return InsufficientTokens(
        required=exc.required,
        available=exc.available,
        needed=exc.needed,
        message=exc.message,
    )
