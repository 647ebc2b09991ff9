"""Side-channel observation of model requests and responses.

Observers see what the schedulers send and receive but cannot influence a run:
every callback is wrapped by ``notify`` and its exceptions are logged and dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from manana_service.pipeline.types import ContentPart, GeneratedImage, ImagePart, TextPart

logger = logging.getLogger(__name__)


class RunObserver(Protocol):
    def on_request(self, correlation_id: str, parts: Sequence[ContentPart]) -> None: ...

    def on_response(self, correlation_id: str, images: Sequence[GeneratedImage]) -> None: ...

    def on_error(self, correlation_id: str, error: BaseException) -> None: ...

    def on_window_shortfall(self, batch_number: int, wanted: int, available: int) -> None: ...


class NullObserver:
    def on_request(self, correlation_id: str, parts: Sequence[ContentPart]) -> None:
        pass

    def on_response(self, correlation_id: str, images: Sequence[GeneratedImage]) -> None:
        pass

    def on_error(self, correlation_id: str, error: BaseException) -> None:
        pass

    def on_window_shortfall(self, batch_number: int, wanted: int, available: int) -> None:
        pass


def summarize_parts(parts: Sequence[ContentPart]) -> list[dict[str, Any]]:
    """Describe content parts without the image bytes."""
    out: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart):
            text = part.text if len(part.text) <= 120 else part.text[:117] + "..."
            out.append({"text": text})
        elif isinstance(part, ImagePart):
            out.append({"image": part.mime_type, "bytes": len(part.data)})
    return out


class LoggingObserver:
    """Logs sanitized request/response summaries at DEBUG."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def on_request(self, correlation_id: str, parts: Sequence[ContentPart]) -> None:
        self._log.debug("request %s parts=%s", correlation_id, summarize_parts(parts))

    def on_response(self, correlation_id: str, images: Sequence[GeneratedImage]) -> None:
        self._log.debug(
            "response %s images=%s",
            correlation_id,
            [{"mime": img.mime_type, "bytes": len(img.data)} for img in images],
        )

    def on_error(self, correlation_id: str, error: BaseException) -> None:
        self._log.debug("error %s %s: %s", correlation_id, type(error).__name__, error)

    def on_window_shortfall(self, batch_number: int, wanted: int, available: int) -> None:
        self._log.debug(
            "batch %d wanted %d references, %d available", batch_number, wanted, available
        )


def notify(observer: RunObserver, method: str, *args: Any) -> None:
    try:
        getattr(observer, method)(*args)
    except Exception:
        logger.warning("Observer %s.%s raised; ignoring", type(observer).__name__, method, exc_info=True)
