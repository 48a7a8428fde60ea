"""
Bulk optimization: two explicit phases.

- Generate: BatchOrchestrator runs a GenerationJob in bounded windows and
  classifies every failure.
- Apply: ApplyPhaseCommitter persists accepted results, debits tokens and
  updates the local catalog state, with a delayed reconcile.
"""

from bulkseo.features.optimization.classifier import (
    CollaboratorFailure,
    Resolution,
    classify_failure,
    failure_from_exception,
    resolution_for,
)
from bulkseo.features.optimization.committer import ApplyPhaseCommitter, ApplyReport
from bulkseo.features.optimization.diff import LanguageDiff, language_diff
from bulkseo.features.optimization.orchestrator import BatchOrchestrator
from bulkseo.features.optimization.state import AppliedEntity, CatalogState, ReconcileReport

__all__ = [
    "AppliedEntity",
    "ApplyPhaseCommitter",
    "ApplyReport",
    "BatchOrchestrator",
    "CatalogState",
    "CollaboratorFailure",
    "LanguageDiff",
    "ReconcileReport",
    "Resolution",
    "classify_failure",
    "failure_from_exception",
    "language_diff",
    "resolution_for",
]
