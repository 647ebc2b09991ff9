"""Unit tests for logging setup and the GCP JSON formatter."""

from __future__ import annotations

import json
import logging
from unittest.mock import patch

import pytest

from manana_service.logging_config import CorrelationFilter, GCPJsonFormatter, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("manana_service.test", logging.WARNING, __file__, 1, "page %d failed", (3,), None)
    for k, v in extra.items():
        setattr(record, k, v)
    CorrelationFilter().filter(record)
    return record


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestGCPJsonFormatter:
    def _format(self, record: logging.LogRecord) -> dict:
        fmt = GCPJsonFormatter(fmt="%(message)s %(name)s %(correlation_id)s", rename_fields={"name": "logger"})
        return json.loads(fmt.format(record))

    def test_severity_and_label(self):
        out = self._format(_record(correlation_id="translate_batch1_pages_4_ab12cd34"))
        assert out["message"] == "page 3 failed"
        assert out["severity"] == "WARNING"
        assert out["logger"] == "manana_service.test"
        assert out["logging.googleapis.com/labels"] == {"correlation_id": "translate_batch1_pages_4_ab12cd34"}
        assert "correlation_id" not in out

    def test_no_label_without_correlation(self):
        out = self._format(_record())
        assert "logging.googleapis.com/labels" not in out


class TestSetupLogging:
    def test_plain_text_locally(self, restore_root):
        with patch("manana_service.logging_config.IS_CLOUD_RUN", False):
            setup_logging(level="debug")
        [handler] = restore_root.handlers
        assert restore_root.level == logging.DEBUG
        assert not isinstance(handler.formatter, GCPJsonFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_on_cloud_run(self, restore_root):
        with patch("manana_service.logging_config.IS_CLOUD_RUN", True):
            setup_logging()
        [handler] = restore_root.handlers
        assert isinstance(handler.formatter, GCPJsonFormatter)
