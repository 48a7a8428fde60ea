"""Bulk optimization worker.

Usage:
    python -m bulkseo.workers.bulk_optimize --shop demo.myshopify.com --languages en,de
    python -m bulkseo.workers.bulk_optimize --shop demo.myshopify.com --languages de --entities p1,p2 --apply

Runs the generate phase for the shop's synced entities and, with --apply,
commits the accepted results. Entitlement and token balance are read from
the remote sources when ENTITLEMENT_API_URL / TOKEN_BALANCE_API_URL are
set, otherwise from the local stores.

Exit codes: 0 completed, 2 aborted (job-wide restriction), 1 error.
"""
from __future__ import annotations

import argparse
import asyncio
from typing import List, Optional, Sequence

from bulkseo.core.config import settings, validate_config
from bulkseo.core.database import create_all_tables
from bulkseo.core.errors import AppError
from bulkseo.core.logging import configure_logging
from bulkseo.features.catalog.service import get_entities
from bulkseo.features.optimization.classifier import resolution_for
from bulkseo.features.optimization.service import OptimizationService
from bulkseo.models.error_class import error_to_dict
from bulkseo.models.job import BatchProgress
from bulkseo.services.collaborators import (
    EntitlementClient,
    GenerationClient,
    PersistenceClient,
    TokenBalanceClient,
)


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ABORTED = 2


def _csv(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _print_progress(progress: BatchProgress) -> None:
    print(f"[bulk-optimize] {progress.processed_count}/{progress.total_count} {progress.current_label}")


def build_service(args: argparse.Namespace) -> OptimizationService:
    return OptimizationService(
        GenerationClient(),
        PersistenceClient(),
        window_size=args.window,
        settle_delay=args.settle_delay,
        on_progress=_print_progress,
        entitlement_source=EntitlementClient() if settings.ENTITLEMENT_API_URL else None,
        balance_source=TokenBalanceClient() if settings.TOKEN_BALANCE_API_URL else None,
    )


async def _run(args: argparse.Namespace) -> int:
    service = build_service(args)
    entity_ids = _csv(args.entities) or [entity.id for entity in get_entities(args.shop)]
    job = service.prepare_job(
        args.shop,
        entity_ids,
        _csv(args.languages),
        enhanced=not args.basic,
        model=args.model,
    )
    print(f"[bulk-optimize] job={job.job_id} entities={len(job.ordered_entities)} model={job.model}")

    run = await service.generate(args.shop, job)
    summary = run.summary
    print(
        f"[bulk-optimize] generate: successful={summary.successful} failed={summary.failed} "
        f"skipped={summary.skipped} pending={summary.pending}"
    )
    for result in run.failures:
        print(f"[bulk-optimize]   failed {result.entity_id}: {result.error.message}")

    if run.abort is not None:
        details = error_to_dict(run.abort)
        print(f"[bulk-optimize] ABORTED {details['kind']}: {details['message']}")
        print(f"[bulk-optimize] next step: {resolution_for(run.abort).value}")
        if details.get("suggestedPlan"):
            print(f"[bulk-optimize] suggested plan: {details['suggestedPlan']}")
        return EXIT_ABORTED

    if not args.apply:
        return EXIT_OK

    report = await service.apply(args.shop, run)
    print(
        f"[bulk-optimize] apply: applied={len(report.applied)} failed={len(report.failures)} "
        f"tokens_used={report.tokens_used}"
    )
    if report.reload_task is not None:
        reconciled = await report.reload_task
        if reconciled is not None and not reconciled.settled:
            print(f"[bulk-optimize] reload pending for: {', '.join(sorted(reconciled.unconfirmed) + reconciled.missing)}")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Bulk optimization worker")
    parser.add_argument("--shop", required=True, help="Shop domain")
    parser.add_argument("--languages", required=True, help="Comma-separated language codes")
    parser.add_argument("--entities", default="", help="Comma-separated entity ids (default: all synced)")
    parser.add_argument("--basic", action="store_true", help="Basic optimization instead of AI-enhanced")
    parser.add_argument("--apply", action="store_true", help="Apply accepted results after generation")
    parser.add_argument("--model", default=None, help="Model override (must be allowed by the plan)")
    parser.add_argument("--window", type=int, default=None, help="Concurrent requests per window")
    parser.add_argument("--settle-delay", type=float, default=None, help="Seconds before the confirmatory reload")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    validate_config()
    create_all_tables()

    try:
        return asyncio.run(_run(args))
    except AppError as exc:
        print(f"[bulk-optimize] error {exc.code}: {exc.message}")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
