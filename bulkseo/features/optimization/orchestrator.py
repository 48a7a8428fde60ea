"""
Batch orchestrator for the generate phase.

One control task walks the job in fixed-size windows. Every window is
dispatched with asyncio.gather and fully settled before the next one; a
job-wide failure seen in a settled window stops further windows. Nothing
here debits tokens: the ledger is only asked can_afford() in pre-flight.

States: PREPARING -> RUNNING -> COMPLETED | ABORTED
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Protocol, Sequence, Set, Tuple, Union

from bulkseo.core.config import settings
from bulkseo.core.logging import bind_job_id
from bulkseo.features.entitlements.service import feature_for, resolve_feature
from bulkseo.features.optimization.classifier import classify_failure, failure_from_exception
from bulkseo.features.optimization.diff import LanguageDiff, language_diff
from bulkseo.features.plans.catalog import get_plan_limits, next_plan_for_limit, plan_rank
from bulkseo.features.tokens.ledger import TokenLedger
from bulkseo.features.tokens.pricing import cost_per_language
from bulkseo.models.entity import EntityKind, OptimizableEntity
from bulkseo.models.error_class import (
    ErrorClass,
    GenericFailure,
    InsufficientTokens,
    LimitExceeded,
    LimitScope,
    error_to_dict,
    is_job_wide,
)
from bulkseo.models.job import (
    BatchProgress,
    BatchRun,
    GeneratedContent,
    GenerationJob,
    GenerationResult,
    JobState,
    Outcome,
)
from bulkseo.models.subscription import Entitlement


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchProgress], Union[None, Awaitable[None]]]

# Strong references to scheduled coroutine callbacks until they finish
_pending_callbacks: Set[asyncio.Future] = set()


class GenerationCollaborator(Protocol):
    async def generate(self, entity_id: str, languages: Sequence[str], model: Optional[str]) -> Dict[str, Any]:
        ...


def emit_progress(callback: Optional[ProgressCallback], progress: BatchProgress) -> None:
    """Call a progress callback without letting it affect the run."""
    if callback is None:
        return
    try:
        outcome = callback(progress)
        if inspect.isawaitable(outcome):
            future = asyncio.ensure_future(outcome)
            _pending_callbacks.add(future)
            future.add_done_callback(_pending_callbacks.discard)
    except Exception as exc:
        logger.warning(
            "[orchestrator] progress callback failed",
            extra={"error": str(exc), "processed": progress.processed_count},
        )


def parse_generation_response(
    entity: OptimizableEntity,
    languages: FrozenSet[str],
    response: Any,
    feature: Optional[str] = None,
) -> GenerationResult:
    """Turn a generation response into SUCCESS, or FAILED when it has no results.

    Content for languages that were not requested is dropped.
    """
    results = response.get("results") if isinstance(response, dict) else None
    payload: List[GeneratedContent] = []
    for item in results or ():
        if not isinstance(item, dict):
            continue
        data = item.get("data")
        if data is None:
            data = item.get("seo")
        language = str(item.get("language") or "").strip().lower()
        if not language or data is None or language not in languages:
            continue
        payload.append(GeneratedContent(language=language, data=data))

    if not payload:
        return GenerationResult(
            entity_id=entity.id,
            outcome=Outcome.FAILED,
            title=entity.label,
            error=GenericFailure(message="Generation returned no results"),
            feature=feature,
        )
    return GenerationResult(
        entity_id=entity.id,
        outcome=Outcome.SUCCESS,
        title=entity.label,
        payload=tuple(sorted(payload, key=lambda content: content.language)),
        languages_applied=frozenset(content.language for content in payload),
        feature=feature,
    )


def _suggest_plan(current_plan: str, count: int, limit_field: str) -> Optional[str]:
    """Name of the cheapest higher plan whose limit covers `count`."""
    plan = next_plan_for_limit(count, limit_field)
    if plan is None or plan_rank(plan.key) <= plan_rank(current_plan):
        return None
    return plan.name


class BatchOrchestrator:
    """Runs the generate phase of a GenerationJob."""

    def __init__(
        self,
        generation: GenerationCollaborator,
        *,
        window_size: Optional[int] = None,
        model: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.generation = generation
        self.window_size = window_size
        self.model = model
        self.on_progress = on_progress

    async def run(
        self,
        job: GenerationJob,
        entitlement: Entitlement,
        ledger: TokenLedger,
        now: Optional[datetime] = None,
    ) -> BatchRun:
        with bind_job_id(job.job_id):
            return await self._run(job, entitlement, ledger, now)

    async def _run(self, job: GenerationJob, entitlement: Entitlement, ledger: TokenLedger, now: Optional[datetime]) -> BatchRun:
        run = BatchRun(job_id=job.job_id, state=JobState.PREPARING, enhanced=job.enhanced, total_count=len(job.ordered_entities))
        logger.info(
            "[orchestrator] PREPARING",
            extra={
                "entities": len(job.ordered_entities),
                "languages": sorted(job.languages_requested),
                "plan_key": entitlement.plan_key,
                "enhanced": job.enhanced,
            },
        )

        diffs, abort = self._preflight(job, entitlement, ledger, now)
        if abort is not None:
            return self._abort(run, abort, pending=[entity.id for entity in job.ordered_entities])

        work: List[Tuple[OptimizableEntity, LanguageDiff]] = []
        for entity in job.ordered_entities:
            diff = diffs[entity.id]
            if diff.needs_work:
                work.append((entity, diff))
            else:
                run.results.append(
                    GenerationResult(
                        entity_id=entity.id,
                        outcome=Outcome.SKIPPED,
                        title=entity.label,
                        skip_reason="already optimized for requested languages",
                    )
                )

        run.state = JobState.RUNNING
        window_size = self.window_size or job.window_size or settings.BATCH_WINDOW_SIZE
        model = job.model or self.model or settings.DEFAULT_MODEL
        total = len(work)
        processed = 0

        for start in range(0, total, window_size):
            window = work[start:start + window_size]
            settled = await asyncio.gather(
                *(
                    self._dispatch(entity, diff.new_languages, model, feature_for(entity.kind, job.enhanced))
                    for entity, diff in window
                )
            )
            run.dispatched_count += len(window)
            processed += len(window)
            run.results.extend(settled)

            emit_progress(
                self.on_progress,
                BatchProgress(processed_count=processed, total_count=total, current_label=window[-1][0].label),
            )

            job_wide = next((r.error for r in settled if r.error is not None and is_job_wide(r.error)), None)
            if job_wide is not None:
                return self._abort(run, job_wide, pending=[entity.id for entity, _ in work[start + window_size:]])

        run.state = JobState.COMPLETED
        summary = run.summary
        logger.info(
            "[orchestrator] COMPLETED",
            extra={
                "successful": summary.successful,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "dispatched": run.dispatched_count,
            },
        )
        return run

    def _preflight(
        self,
        job: GenerationJob,
        entitlement: Entitlement,
        ledger: TokenLedger,
        now: Optional[datetime],
    ) -> Tuple[Dict[str, LanguageDiff], Optional[ErrorClass]]:
        """Every gate that can stop the job before a single call goes out."""
        diffs = {
            entity.id: language_diff(entity, job.languages_requested, entitlement.language_limit)
            for entity in job.ordered_entities
        }
        needing = [entity for entity in job.ordered_entities if diffs[entity.id].needs_work]

        for entity in needing:
            diff = diffs[entity.id]
            if diff.limit_exceeded:
                return diffs, LimitExceeded(
                    scope=LimitScope.LANGUAGES,
                    projected=diff.projected_total,
                    limit=diff.language_limit,
                    entity_id=entity.id,
                    message=f"{entity.label} would have {diff.projected_total} languages, plan allows {diff.language_limit}",
                    suggested_plan=_suggest_plan(entitlement.plan_key, diff.projected_total, "language_limit"),
                )

        plan = get_plan_limits(entitlement.plan_key)
        collection_limit = entitlement.collection_limit if entitlement.collection_limit is not None else plan.collection_limit
        limits = (
            (EntityKind.PRODUCT, LimitScope.PRODUCTS, entitlement.product_limit, "product_limit"),
            (EntityKind.COLLECTION, LimitScope.COLLECTIONS, collection_limit, "collection_limit"),
        )
        for kind, scope, limit, field in limits:
            count = sum(1 for entity in needing if entity.kind == kind)
            if count > limit:
                return diffs, LimitExceeded(
                    scope=scope,
                    projected=count,
                    limit=limit,
                    message=f"{count} {scope.value} selected, plan allows {limit}",
                    suggested_plan=_suggest_plan(entitlement.plan_key, count, field),
                )

        subscription = entitlement.subscription
        estimated_cost = 0
        for feature in dict.fromkeys(feature_for(entity.kind, job.enhanced) for entity in needing):
            decision = resolve_feature(subscription, feature, now)
            if not decision.enabled:
                return diffs, decision.to_error_class()

        for entity in needing:
            feature = feature_for(entity.kind, job.enhanced)
            estimated_cost += cost_per_language(feature) * len(diffs[entity.id].new_languages)

        if not ledger.can_afford(estimated_cost):
            return diffs, InsufficientTokens(
                required=estimated_cost,
                available=ledger.balance,
                needed=estimated_cost - ledger.balance,
                message=f"Job needs {estimated_cost} tokens, balance is {ledger.balance}",
            )
        return diffs, None

    async def _dispatch(
        self,
        entity: OptimizableEntity,
        languages: FrozenSet[str],
        model: str,
        feature: Optional[str] = None,
    ) -> GenerationResult:
        """One generation call; never raises."""
        try:
            response = await self.generation.generate(entity.id, sorted(languages), model)
        except Exception as exc:
            error = classify_failure(failure_from_exception(exc))
            logger.warning(
                "[orchestrator] entity failed",
                extra={"entity_id": entity.id, "error_code": error.kind.value, "error": error.message},
            )
            return GenerationResult(
                entity_id=entity.id,
                outcome=Outcome.FAILED,
                title=entity.label,
                error=error,
                feature=feature,
            )
        return parse_generation_response(entity, languages, response, feature)

    def _abort(self, run: BatchRun, error: ErrorClass, pending: List[str]) -> BatchRun:
        run.state = JobState.ABORTED
        run.abort = error
        run.pending_ids = pending
        logger.warning(
            "[orchestrator] ABORTED",
            extra={"error_code": error.kind.value, "abort": error_to_dict(error), "pending": len(pending)},
        )
        return run
