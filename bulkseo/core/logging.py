"""
Structured logging with job ID support.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound job_id for correlating every log line of a bulk run.
- Bulk-run fields (shop, entity, feature, token amounts) carried into JSON lines.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

job_id_ctx_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)

# `extra=` keys copied into JSON lines when present
RECORD_FIELDS = (
    "shop",
    "entity_id",
    "event_type",
    "error_code",
    "error",
    "plan_key",
    "feature",
    "languages",
    "required",
    "available",
    "amount",
    "balance_after",
    "entities",
    "successful",
    "applied",
    "failed",
    "skipped",
    "pending",
    "tokens_used",
)


def get_job_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current job_id from context (if any)."""
    jid = job_id_ctx_var.get()
    return jid if jid is not None else default


@contextmanager
def bind_job_id(job_id: Optional[str]) -> Iterator[None]:
    """Bind job_id for the duration of a block (tasks spawned inside inherit it)."""
    token = job_id_ctx_var.set(job_id)
    try:
        yield
    finally:
        job_id_ctx_var.reset(token)


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


class JobIdFilter(logging.Filter):
    """Inject job_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "job_id", None) is None:
            record.job_id = get_job_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "job_id": getattr(record, "job_id", None),
        }
        for key in RECORD_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        jid = getattr(record, "job_id", None)
        jid_part = f" [job={jid}]" if jid else ""
        ts = _format_timestamp(record)
        return f"{ts} {record.levelname} [bulkseo]{jid_part} {record.getMessage()}"


def configure_logging(env: str = "development") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger("bulkseo")
    logger.setLevel(logging.INFO)

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(JobIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

