"""
bulkseo/features/optimization/service.py

Shop-level entry point for bulk optimization.

Handles:
- Job preparation from the local catalog (ordering, model choice)
- Generate phase with a fresh entitlement + ledger snapshot
- Apply phase with per-entity durable token holds, then optimization state
"""

from datetime import datetime
from typing import Iterable, List, Optional, Protocol
import logging

from bulkseo.core.errors import NotFoundError, ValidationError
from bulkseo.features.catalog import service as catalog_store
from bulkseo.features.optimization.committer import ApplyPhaseCommitter, ApplyReport, PersistenceCollaborator
from bulkseo.features.optimization.orchestrator import BatchOrchestrator, GenerationCollaborator, ProgressCallback
from bulkseo.features.plans.catalog import allowed_models_for_plan, get_plan_limits, vendor_from_model
from bulkseo.features.subscriptions import service as subscription_store
from bulkseo.features.tokens import store as token_store
from bulkseo.features.tokens.ledger import TokenLedger
from bulkseo.core.config import settings
from bulkseo.models.entity import normalize_languages
from bulkseo.models.job import BatchRun, GenerationJob
from bulkseo.models.ledger import LedgerSnapshot
from bulkseo.models.subscription import Entitlement


logger = logging.getLogger(__name__)


class EntitlementSource(Protocol):
    async def fetch(self) -> Entitlement:
        ...


class TokenBalanceSource(Protocol):
    async def fetch(self) -> LedgerSnapshot:
        ...


def choose_model(plan_key: str, requested: Optional[str] = None) -> str:
    """
    Model for a job on this plan.

    Raises:
        ValidationError: If `requested` belongs to a provider the plan excludes
    """
    plan = get_plan_limits(plan_key)
    if requested:
        if vendor_from_model(requested) not in plan.providers_allowed:
            raise ValidationError(f"Model {requested} is not available on the {plan.name} plan")
        return requested
    allowed = allowed_models_for_plan(plan.key)
    if settings.DEFAULT_MODEL in allowed or not allowed:
        return settings.DEFAULT_MODEL
    return allowed[0]


class OptimizationService:
    """Runs both phases for one shop against the durable stores."""

    def __init__(
        self,
        generation: GenerationCollaborator,
        persistence: PersistenceCollaborator,
        *,
        window_size: Optional[int] = None,
        settle_delay: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        entitlement_source: Optional[EntitlementSource] = None,
        balance_source: Optional[TokenBalanceSource] = None,
    ):
        self.generation = generation
        self.persistence = persistence
        self.window_size = window_size
        self.settle_delay = settle_delay
        self.on_progress = on_progress
        self.entitlement_source = entitlement_source
        self.balance_source = balance_source

    async def _entitlement(self, shop: str, now: Optional[datetime]) -> Entitlement:
        if self.entitlement_source is not None:
            return await self.entitlement_source.fetch()
        return subscription_store.get_entitlement(shop, now=now)

    async def _ledger(self, shop: str, entitlement: Entitlement) -> TokenLedger:
        if self.balance_source is not None:
            snapshot = await self.balance_source.fetch()
        else:
            snapshot = token_store.get_ledger_snapshot(shop)
        return TokenLedger(snapshot, get_plan_limits(entitlement.plan_key).token_policy)

    def prepare_job(
        self,
        shop: str,
        entity_ids: Iterable[str],
        languages: Iterable[str],
        *,
        enhanced: bool = True,
        model: Optional[str] = None,
    ) -> GenerationJob:
        """
        Build a job over synced entities, in the order given.

        Raises:
            ValidationError: If no languages or no entities are given
            NotFoundError: If an id was never synced for the shop
        """
        entity_ids = list(dict.fromkeys(entity_ids))
        requested = normalize_languages(languages)
        if not requested:
            raise ValidationError("At least one language is required")
        if not entity_ids:
            raise ValidationError("At least one entity is required")

        entities = catalog_store.get_entities(shop, entity_ids)
        found = {entity.id for entity in entities}
        missing = [entity_id for entity_id in entity_ids if entity_id not in found]
        if missing:
            raise NotFoundError(f"Unknown entities for shop {shop}: {', '.join(missing)}")

        plan_key = subscription_store.get_subscription_state(shop).plan_key
        job_fields = {
            "ordered_entities": entities,
            "languages_requested": requested,
            "enhanced": enhanced,
            "model": choose_model(plan_key, model),
        }
        if self.window_size:
            job_fields["window_size"] = self.window_size
        return GenerationJob(**job_fields)

    async def generate(self, shop: str, job: GenerationJob, *, now: Optional[datetime] = None) -> BatchRun:
        entitlement = await self._entitlement(shop, now)
        ledger = await self._ledger(shop, entitlement)
        orchestrator = BatchOrchestrator(self.generation, window_size=self.window_size, on_progress=self.on_progress)
        run = await orchestrator.run(job, entitlement, ledger, now=now)

        summary = run.summary
        log = logger.info if run.abort is None else logger.warning
        log(
            "[optimization] generate finished",
            extra={
                "job_id": run.job_id,
                "shop": shop,
                "event_type": "generate",
                "error_code": run.abort.kind.value if run.abort else None,
                "successful": summary.successful,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "pending": summary.pending,
            },
        )
        return run

    async def apply(self, shop: str, run: BatchRun, *, now: Optional[datetime] = None) -> ApplyReport:
        """
        Commit a COMPLETED run, then record the optimization state.

        Token costs are held and settled per entity against the shop's durable
        balance, so overlapping applies can never spend the same tokens; an
        entity the balance no longer covers ends up in `report.failures`.
        """
        entitlement = await self._entitlement(shop, now)
        ledger = await self._ledger(shop, entitlement)
        ids: List[str] = [result.entity_id for result in run.accepted]
        committer = ApplyPhaseCommitter(
            self.persistence,
            window_size=self.window_size,
            settle_delay=self.settle_delay,
            on_progress=self.on_progress,
        )
        report = await committer.apply(
            run,
            ledger,
            entities=catalog_store.get_entities(shop, ids),
            reload=lambda: catalog_store.get_entities(shop, ids),
            now=now,
            account=token_store.ShopTokenAccount(shop),
        )
        if report.rejected_reason:
            return report

        for item in report.applied:
            catalog_store.record_optimization(shop, item.entity_id, item.languages, ai_enhanced=item.ai_enhanced, at=item.at)

        logger.info(
            "[optimization] apply finished",
            extra={
                "job_id": run.job_id,
                "shop": shop,
                "event_type": "apply",
                "applied": len(report.applied),
                "failed": len(report.failures),
                "tokens_used": report.tokens_used,
                "balance_after": report.snapshot.balance,
            },
        )
        return report
