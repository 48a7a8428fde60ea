"""Tests for configuration validation, structured logging and error payloads."""
import json
import logging

import pytest

from bulkseo.core.config import Settings, validate_config
from bulkseo.core.errors import CollaboratorError, InsufficientTokensError, NotFoundError
from bulkseo.core.logging import (
    JobIdFilter,
    JsonFormatter,
    PrettyFormatter,
    bind_job_id,
    configure_logging,
    get_job_id,
)


def _settings(**overrides):
    values = {
        "DATABASE_URL": "sqlite://",
        "GENERATION_API_URL": "https://gen.example.com",
        "PERSISTENCE_API_URL": "https://store.example.com",
        "COLLABORATOR_API_KEY": "key",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestValidateConfig:
    def test_complete_config_passes_strict(self):
        assert validate_config(strict=True, settings_obj=_settings()) is True

    def test_missing_keys_raise_in_strict_mode(self):
        with pytest.raises(RuntimeError) as exc:
            validate_config(strict=True, settings_obj=_settings(GENERATION_API_URL=None))
        assert "GENERATION_API_URL" in str(exc.value)

    def test_missing_keys_warn_otherwise(self, caplog):
        with caplog.at_level(logging.WARNING):
            validate_config(strict=False, settings_obj=_settings(COLLABORATOR_API_KEY=None), logger=logging.getLogger("bulkseo.test"))
        assert "COLLABORATOR_API_KEY" in caplog.text

    def test_window_size_must_be_positive(self):
        with pytest.raises(RuntimeError):
            validate_config(strict=True, settings_obj=_settings(BATCH_WINDOW_SIZE=0))

    def test_defaults(self):
        cfg = _settings()
        assert cfg.BATCH_WINDOW_SIZE == 5
        assert cfg.APPLY_SETTLE_DELAY_SECONDS == 1.0


class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("bulkseo.test", logging.INFO, __file__, 1, "[orchestrator] RUNNING", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_job_id_bound_and_injected(self):
        assert get_job_id() is None
        with bind_job_id("job-123"):
            record = self._record()
            JobIdFilter().filter(record)
            assert record.job_id == "job-123"
        assert get_job_id("none") == "none"

    def test_json_formatter(self):
        record = self._record(job_id="job-1", shop="demo", error_code="GENERIC")
        payload = json.loads(JsonFormatter().format(record))
        assert payload["job_id"] == "job-1"
        assert payload["shop"] == "demo"
        assert payload["error_code"] == "GENERIC"
        assert payload["message"] == "[orchestrator] RUNNING"

    def test_pretty_formatter(self):
        line = PrettyFormatter().format(self._record(job_id="job-9"))
        assert "[bulkseo] [job=job-9] [orchestrator] RUNNING" in line

    def test_json_carries_bulk_run_fields(self):
        record = self._record(applied=2, tokens_used=4000, balance_after=0, unrelated="x")
        payload = json.loads(JsonFormatter().format(record))
        assert (payload["applied"], payload["tokens_used"], payload["balance_after"]) == (2, 4000, 0)
        assert "unrelated" not in payload

    def test_configure_logging_production(self, monkeypatch):
        logger = logging.getLogger("bulkseo")
        monkeypatch.setattr(logger, "handlers", [])
        monkeypatch.setattr(logger, "level", logger.level)

        configure_logging("production")

        (handler,) = logger.handlers
        assert isinstance(handler.formatter, JsonFormatter)
        assert any(isinstance(f, JobIdFilter) for f in handler.filters)
        assert logging.getLogger("httpx").level == logging.WARNING


class TestErrors:
    def test_payload_shape(self):
        payload = NotFoundError("missing", job_id="j1").to_payload()
        assert payload == {"error": {"code": "not_found", "message": "missing", "job_id": "j1"}, "detail": "missing"}

    def test_payload_uses_bound_job_id(self):
        with bind_job_id("job-7"):
            assert InsufficientTokensError(required=5, available=1).to_payload()["error"]["job_id"] == "job-7"

    def test_collaborator_error(self):
        exc = CollaboratorError("bad gateway", status=502)
        assert exc.status_code == 502
        assert exc.payload == {}
