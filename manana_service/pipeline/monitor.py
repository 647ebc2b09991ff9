from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from manana_service.config import MANANA_PAGE_TIMEOUT_SECONDS, MANANA_TIMEOUT_POLL_SECONDS
from manana_service.pipeline import events
from manana_service.pipeline.events import EventBus
from manana_service.pipeline.store import PageStore
from manana_service.pipeline.types import Attempt

logger = logging.getLogger(__name__)

TIMED_OUT = "timedOut"


class TimeoutMonitor:
    """Fails pages that have been processing for longer than the page deadline.

    The forced failure goes through the event bus like any other outcome, so a
    result that arrives afterwards finds the page already failed and is dropped.
    Schedulers stop waiting on a call once its pages are failed this way.
    """

    def __init__(
        self,
        store: PageStore,
        bus: EventBus,
        *,
        deadline_seconds: float = MANANA_PAGE_TIMEOUT_SECONDS,
        poll_seconds: float = MANANA_TIMEOUT_POLL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._deadline = deadline_seconds
        self._poll = poll_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    def sweep(self) -> list[Attempt]:
        """Publish a failure for every overdue page; returns the attempts it timed out."""
        now = self._clock()
        epoch = self._store.epoch
        overdue = [
            attempt
            for attempt, started_at in self._store.processing_pages()
            if now - started_at >= self._deadline
        ]
        for attempt in overdue:
            logger.warning(
                "Page %s exceeded %.0fs deadline; marking failed", attempt.page_id, self._deadline
            )
            self._bus.publish(events.failed(attempt, epoch, TIMED_OUT))
        return overdue

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="page-timeout-monitor")

    async def aclose(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll)
            try:
                self.sweep()
            except Exception:
                logger.exception("Timeout sweep failed")
