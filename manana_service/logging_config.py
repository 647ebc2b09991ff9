"""Logging setup: plain text on a workstation, GCP-style JSON on Cloud Run.

Records may carry a ``correlation_id`` (pass ``extra={"correlation_id": ...}``),
the same id that tags the model request, so a failed page can be traced back
to the call that produced it.
"""

from __future__ import annotations

import logging
import uuid

from pythonjsonlogger.json import JsonFormatter

from manana_service.config import IS_CLOUD_RUN

# Cloud Logging indexes labels under this key
_LABELS_KEY = "logging.googleapis.com/labels"
_NO_CORRELATION = "-"


class CorrelationFilter(logging.Filter):
    """Gives every record a ``correlation_id`` so formatters can rely on it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = _NO_CORRELATION
        return True


class GCPJsonFormatter(JsonFormatter):
    """JSON lines with a ``severity`` field and the correlation id as a label."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = record.levelname
        log_record.pop("levelname", None)
        correlation_id = log_record.pop("correlation_id", _NO_CORRELATION)
        if correlation_id != _NO_CORRELATION:
            log_record[_LABELS_KEY] = {"correlation_id": correlation_id}


def setup_logging(*, level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationFilter())
    if IS_CLOUD_RUN:
        handler.setFormatter(
            GCPJsonFormatter(
                fmt="%(message)s %(name)s %(lineno)d %(correlation_id)s",
                rename_fields={"name": "logger"},
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    root.addHandler(handler)

    # google-genai and httpx log every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:16]
