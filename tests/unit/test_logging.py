"""
Unit tests for logging setup and job log context.
"""

import json
import logging

import pytest
import structlog

from jobrunner.observability.logging import job_log_context, setup_logging


class TestLogging:
    """Tests for structured logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    def test_job_context_is_scoped(self):
        with job_log_context(job_id="j-1", worker_id="w-1"):
            assert structlog.contextvars.get_contextvars() == {
                "job_id": "j-1",
                "worker_id": "w-1",
            }

        assert "job_id" not in structlog.contextvars.get_contextvars()

    def test_json_output_includes_extra_and_context(self, capsys: pytest.CaptureFixture[str]):
        """Stdlib records come out as JSON with extras and bound job fields."""
        setup_logging(level="INFO", log_format="json")

        with job_log_context(job_id="j-2"):
            logging.getLogger("jobrunner.test").info("Job completed", extra={"attempt": 2})

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "Job completed"
        assert record["level"] == "info"
        assert record["job_id"] == "j-2"
        assert record["attempt"] == 2
