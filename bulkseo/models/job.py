"""
bulkseo/models/job.py

Generation job, per-entity results and the run record returned by the
orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bulkseo.core.config import settings
from bulkseo.models.entity import OptimizableEntity, normalize_languages
from bulkseo.models.error_class import ErrorClass


class JobState(str, Enum):
    PREPARING = "PREPARING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


class Outcome(str, Enum):
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class GenerationJob(BaseModel):
    """
    A bulk request: which entities, which languages, how wide each window is.

    ordered_entities keeps the caller's order; windows are cut from it.
    """
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: str(uuid4()))
    ordered_entities: Tuple[OptimizableEntity, ...]
    languages_requested: FrozenSet[str]
    window_size: int = Field(default_factory=lambda: settings.BATCH_WINDOW_SIZE, ge=1)
    enhanced: bool = True
    model: Optional[str] = None

    @field_validator("languages_requested", mode="before")
    @classmethod
    def _normalize(cls, value):
        return normalize_languages(value or ())

    @field_validator("ordered_entities", mode="before")
    @classmethod
    def _as_tuple(cls, value):
        return tuple(value or ())


@dataclass(frozen=True)
class GeneratedContent:
    language: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class GenerationResult:
    entity_id: str
    outcome: Outcome
    title: str = ""
    payload: Tuple[GeneratedContent, ...] = ()
    error: Optional[ErrorClass] = None
    languages_applied: FrozenSet[str] = frozenset()
    skip_reason: Optional[str] = None
    feature: Optional[str] = None


@dataclass(frozen=True)
class BatchProgress:
    processed_count: int
    total_count: int
    current_label: str


@dataclass(frozen=True)
class BatchSummary:
    successful: int
    failed: int
    skipped: int
    pending: int
    total: int


@dataclass
class BatchRun:
    """What a generate phase produced. Only COMPLETED runs can be applied."""
    job_id: str
    state: JobState
    enhanced: bool = True
    results: List[GenerationResult] = field(default_factory=list)
    abort: Optional[ErrorClass] = None
    pending_ids: List[str] = field(default_factory=list)
    dispatched_count: int = 0
    total_count: int = 0

    @property
    def summary(self) -> BatchSummary:
        counts = {outcome: 0 for outcome in Outcome}
        for result in self.results:
            counts[result.outcome] += 1
        return BatchSummary(
            successful=counts[Outcome.SUCCESS],
            failed=counts[Outcome.FAILED],
            skipped=counts[Outcome.SKIPPED],
            pending=len(self.pending_ids),
            total=self.total_count,
        )

    @property
    def accepted(self) -> List[GenerationResult]:
        return [r for r in self.results if r.outcome == Outcome.SUCCESS]

    @property
    def failures(self) -> List[GenerationResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]
