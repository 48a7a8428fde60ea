"""
bulkseo/features/optimization/classifier.py

Error classification for collaborator failures.

Handles:
- Mapping a failed collaborator response (status + body) to exactly one
  ErrorClass variant
- Converting raised exceptions into failures
- The caller-facing resolution for each class

classify_failure is total: anything it does not recognise becomes GENERIC.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import logging

import httpx

from bulkseo.core.errors import CollaboratorError
from bulkseo.models.error_class import (
    ErrorClass,
    GenericFailure,
    InsufficientTokens,
    LimitExceeded,
    PlanRestriction,
    TrialRestriction,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollaboratorFailure:
    """A failed call as seen by the core: HTTP-ish status plus the body."""
    status: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


class Resolution(str, Enum):
    UPGRADE_PLAN = "UPGRADE_PLAN"
    ACTIVATE_PLAN = "ACTIVATE_PLAN"
    PURCHASE_TOKENS = "PURCHASE_TOKENS"
    REDUCE_SELECTION = "REDUCE_SELECTION"
    REVIEW_FAILURES = "REVIEW_FAILURES"


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _message(failure: CollaboratorFailure) -> str:
    payload = failure.payload or {}
    return str(payload.get("error") or payload.get("message") or failure.message or "Request failed")


def classify_failure(failure: CollaboratorFailure) -> ErrorClass:
    payload = failure.payload or {}
    message = _message(failure)

    if failure.status == 403:
        required = payload.get("minimumPlanRequired") or payload.get("minimumPlanForFeature")
        return PlanRestriction(required_plan=required, message=message)

    if failure.status == 402:
        if payload.get("trialRestriction"):
            return TrialRestriction(requires_activation=bool(payload.get("requiresActivation")), message=message)
        if payload.get("requiresPurchase"):
            required = _int(payload.get("tokensRequired"))
            available = _int(payload.get("tokensAvailable"))
            needed = _int(payload.get("tokensNeeded"), default=max(0, required - available))
            return InsufficientTokens(required=required, available=available, needed=needed, message=message)

    return GenericFailure(message=message, status=failure.status)


def failure_from_exception(exc: BaseException) -> CollaboratorFailure:
    """Turn anything a collaborator call raised into a CollaboratorFailure."""
    if isinstance(exc, CollaboratorError):
        return CollaboratorFailure(status=exc.status, payload=dict(exc.payload), message=exc.message)
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = {}
        return CollaboratorFailure(
            status=exc.response.status_code,
            payload=body if isinstance(body, dict) else {},
            message=str(exc),
        )
    if isinstance(exc, httpx.TimeoutException):
        return CollaboratorFailure(status=None, message=f"Request timed out: {exc}")
    if isinstance(exc, httpx.HTTPError):
        return CollaboratorFailure(status=None, message=f"Network error: {exc}")
    logger.warning(
        "[classifier] unexpected exception",
        extra={"error_type": type(exc).__name__, "error": str(exc)},
    )
    return CollaboratorFailure(status=None, message=str(exc) or type(exc).__name__)


def resolution_for(error: ErrorClass) -> Resolution:
    """Single decision point for the caller, one per error class."""
    if isinstance(error, PlanRestriction):
        return Resolution.UPGRADE_PLAN
    if isinstance(error, TrialRestriction):
        # Without requiresActivation the legacy response is an upgrade prompt
        return Resolution.ACTIVATE_PLAN if error.requires_activation else Resolution.UPGRADE_PLAN
    if isinstance(error, InsufficientTokens):
        return Resolution.PURCHASE_TOKENS
    if isinstance(error, LimitExceeded):
        return Resolution.REDUCE_SELECTION
    if isinstance(error, GenericFailure):
        return Resolution.REVIEW_FAILURES
    raise TypeError(f"Unknown error class: {type(error).__name__}")
