"""Error normalization for the optimization core.

Collaborator failures are classified into the job taxonomy and never raised
out of the orchestrator; the errors below cover library misuse and the
edges (HTTP clients, ledger reservations, durable stores).
"""

from typing import Any, Dict, Optional

from bulkseo.core.logging import get_job_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.job_id = job_id

    def to_payload(self) -> dict:
        return _error_payload(self.code, self.message, self.job_id or get_job_id())


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class LedgerError(AppError):
    """Raised when a reservation is committed/released twice or is unknown."""
    code = "ledger_error"
    status_code = 409


class InsufficientTokensError(AppError):
    code = "insufficient_tokens"
    status_code = 402

    def __init__(self, required: int, available: int, *, job_id: Optional[str] = None):
        super().__init__(
            f"Insufficient token balance: required {required}, available {available}",
            job_id=job_id,
        )
        self.required = required
        self.available = available

    @property
    def needed(self) -> int:
        return max(0, self.required - self.available)


class CollaboratorError(AppError):
    """Non-2xx response from an external collaborator."""
    code = "collaborator_error"
    status_code = 502

    def __init__(self, message: str, *, status: Optional[int] = None, payload: Optional[Dict[str, Any]] = None, job_id: Optional[str] = None):
        super().__init__(message, job_id=job_id)
        self.status = status
        self.payload = payload or {}


def _error_payload(code: str, message: str, job_id: Optional[str]) -> dict:
    return {
        "error": {"code": code, "message": message, "job_id": job_id},
        "detail": message,
    }
