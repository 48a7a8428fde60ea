"""
bulkseo/models/error_class.py

Failure taxonomy for bulk optimization.

Every failure a job can meet resolves to exactly one of these variants.
The first four are job-wide (they abort the job and surface once);
GenericFailure is per entity.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class ErrorKind(str, Enum):
    PLAN_RESTRICTION = "PLAN_RESTRICTION"
    TRIAL_RESTRICTION = "TRIAL_RESTRICTION"
    INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    GENERIC = "GENERIC"


class LimitScope(str, Enum):
    LANGUAGES = "languages"
    PRODUCTS = "products"
    COLLECTIONS = "collections"


@dataclass(frozen=True)
class PlanRestriction:
    required_plan: Optional[str] = None
    message: str = "Feature requires a higher plan"
    kind = ErrorKind.PLAN_RESTRICTION


@dataclass(frozen=True)
class TrialRestriction:
    requires_activation: bool
    message: str = "Feature is locked during the trial period"
    kind = ErrorKind.TRIAL_RESTRICTION


@dataclass(frozen=True)
class InsufficientTokens:
    required: int
    available: int
    needed: int = 0
    message: str = "Insufficient token balance"
    kind = ErrorKind.INSUFFICIENT_TOKENS


@dataclass(frozen=True)
class LimitExceeded:
    scope: LimitScope
    projected: int
    limit: int
    entity_id: Optional[str] = None
    message: str = "Plan limit exceeded"
    suggested_plan: Optional[str] = None  # cheapest plan that covers `projected`
    kind = ErrorKind.LIMIT_EXCEEDED


@dataclass(frozen=True)
class GenericFailure:
    message: str
    status: Optional[int] = None
    kind = ErrorKind.GENERIC


ErrorClass = Union[PlanRestriction, TrialRestriction, InsufficientTokens, LimitExceeded, GenericFailure]

JOB_WIDE_KINDS = frozenset({
    ErrorKind.PLAN_RESTRICTION,
    ErrorKind.TRIAL_RESTRICTION,
    ErrorKind.INSUFFICIENT_TOKENS,
    ErrorKind.LIMIT_EXCEEDED,
})


def is_job_wide(error: ErrorClass) -> bool:
    return error.kind in JOB_WIDE_KINDS


def error_to_dict(error: ErrorClass) -> dict:
    """Flatten an error class for logs and summaries."""
    payload = {"kind": error.kind.value, "message": error.message}
    if isinstance(error, PlanRestriction):
        payload["requiredPlan"] = error.required_plan
    elif isinstance(error, TrialRestriction):
        payload["requiresActivation"] = error.requires_activation
    elif isinstance(error, InsufficientTokens):
        payload.update(required=error.required, available=error.available, needed=error.needed)
    elif isinstance(error, LimitExceeded):
        payload.update(scope=error.scope.value, projected=error.projected, limit=error.limit, entityId=error.entity_id)
        if error.suggested_plan:
            payload["suggestedPlan"] = error.suggested_plan
    elif isinstance(error, GenericFailure):
        payload["status"] = error.status
    return payload
