"""Ordered delivery of page outcomes into the store.

Concurrently running requests never touch the PageStore directly. They publish
PageEvents onto one queue, and a single consumer task applies them in arrival
order. ``drain()`` waits until everything published so far has been applied,
which is how a scheduler knows a settled batch is visible in the store.

``await_while`` lets a caller stop waiting on a model call once its pages have
left ``processing`` some other way (the timeout monitor), so a call that never
returns cannot hold a run open.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from manana_service.pipeline.store import PageStore
from manana_service.pipeline.types import Attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PageEvent:
    attempt: Attempt
    epoch: int
    ok: bool
    data: bytes | None = field(default=None, repr=False)
    mime_type: str | None = None
    error_kind: str | None = None


def completed(attempt: Attempt, epoch: int, data: bytes, mime_type: str) -> PageEvent:
    return PageEvent(attempt=attempt, epoch=epoch, ok=True, data=data, mime_type=mime_type)


def failed(attempt: Attempt, epoch: int, kind: str) -> PageEvent:
    return PageEvent(attempt=attempt, epoch=epoch, ok=False, error_kind=kind)


class EventBus:
    def __init__(
        self,
        store: PageStore,
        *,
        on_applied: Callable[[PageEvent, bool], None] | None = None,
    ) -> None:
        self._store = store
        self._queue: asyncio.Queue[PageEvent] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._on_applied = on_applied
        self._changed = asyncio.Condition()

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="page-event-consumer")

    async def aclose(self) -> None:
        if self._consumer is None:
            return
        await self.drain()
        self._consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None

    def publish(self, event: PageEvent) -> None:
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        await self._queue.join()

    def apply(self, event: PageEvent) -> bool:
        if event.ok:
            if event.data is None:
                raise ValueError(f"Success event for page {event.attempt.page_id} carries no image")
            applied = self._store.complete(
                event.attempt, event.epoch, event.data, event.mime_type or "image/png"
            )
        else:
            applied = self._store.fail(event.attempt, event.epoch, event.error_kind or "unknownError")
        if self._on_applied is not None:
            self._on_applied(event, applied)
        return applied

    async def await_while(
        self, aw: Awaitable[T], still_waiting: Callable[[], bool]
    ) -> T | None:
        """Await ``aw`` for as long as ``still_waiting()`` holds.

        ``still_waiting`` is re-checked after every applied event. When it turns
        false first, the call is cancelled and abandoned and None is returned;
        otherwise the call's result (or exception) comes back as usual.
        """
        call = asyncio.ensure_future(aw)
        gone = asyncio.ensure_future(self._wait_until_not(still_waiting))
        try:
            done, _ = await asyncio.wait({call, gone}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gone.cancel()
            if not call.done():
                call.cancel()
        if call in done:
            return call.result()
        # the call may still be stuck in a worker thread; only its result is dropped
        call.add_done_callback(_discard_outcome)
        return None

    async def _wait_until_not(self, still_waiting: Callable[[], bool]) -> None:
        async with self._changed:
            await self._changed.wait_for(lambda: not still_waiting())

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.apply(event)
            except Exception:
                logger.exception("Failed to apply page event for %s", event.attempt.page_id)
            finally:
                self._queue.task_done()
            async with self._changed:
                self._changed.notify_all()


def _discard_outcome(task: asyncio.Future[object]) -> None:
    if not task.cancelled():
        task.exception()
