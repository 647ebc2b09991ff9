"""Batch schedulers, one per processing mode.

Each scheduler splits the page sequence into batches, picks the reference
window for every batch and issues model requests. Page outcomes are published
to the EventBus; a scheduler never writes results into the store itself.

Common rules:

- Batches run strictly one after another. A batch is settled when every one
  of its requests has returned or failed *and* every resulting event has been
  applied to the store (``EventBus.drain``).
- A request whose target pages all left ``processing`` without it (timed out)
  is abandoned; the batch does not wait for a call that never returns.
- The reference window for batch k+1 is computed only after batch k settled,
  from pages the store reports as ``done``. Pages forced to ``failed`` by the
  timeout monitor therefore never become references.
- A failing request fails only its own target pages. ``RequestNotAttemptedError``
  is the exception: it propagates and the controller aborts the run.

Batch sizing per mode::

    translate               [0..B-1], [B..2B-1], ...               no references
    colorize                [0], [1..B-1], then B at a time        refs = min(k, B)
    colorize-and-translate  1, then min(k, B, completed) at a time refs = min(B, completed)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from manana_service.logging_config import generate_request_id
from manana_service.pipeline import events
from manana_service.pipeline.errors import (
    ClassifiedError,
    ErrorKind,
    NoImageGeneratedError,
    RequestNotAttemptedError,
    classify_error,
)
from manana_service.pipeline.events import EventBus
from manana_service.pipeline.gemini import ImageModelClient
from manana_service.pipeline.observer import RunObserver, notify
from manana_service.pipeline.prompts import (
    aspect_ratio_for,
    colorize_prompt,
    colorize_translate_prompt,
    reference_label,
    target_label,
    translate_prompt,
)
from manana_service.pipeline.store import PageStore
from manana_service.pipeline.types import (
    Attempt,
    Batch,
    ContentPart,
    GeneratedImage,
    ImagePart,
    Mode,
    PageStatus,
    ProcessingConfig,
    RunState,
    TextPart,
)
from manana_service.pipeline.window import build_window

logger = logging.getLogger(__name__)


# -- Batch sizing policies ----------------------------------------------------


def plan_translate_batches(total_pages: int, batch_size: int) -> list[tuple[int, ...]]:
    return [
        tuple(range(start, min(start + batch_size, total_pages)))
        for start in range(0, total_pages, batch_size)
    ]


def colorize_target_count(batch_size: int, remaining: int) -> int:
    """Targets for colorize batch k >= 3."""
    return min(batch_size, remaining)


def plan_colorize_batches(total_pages: int, batch_size: int) -> list[tuple[int, tuple[int, ...], int]]:
    """(batch_number, target ordinals, wanted reference count) for a colorize run.

    With batch_size == 1 the second batch has no targets; it is skipped and
    numbering continues at 3.
    """
    if total_pages == 0:
        return []
    plan: list[tuple[int, tuple[int, ...], int]] = [(1, (0,), 0)]
    second = tuple(range(1, min(batch_size, total_pages)))
    if second:
        plan.append((2, second, 1))
    cursor = min(batch_size, total_pages)
    batch_number = 3
    while cursor < total_pages:
        count = colorize_target_count(batch_size, total_pages - cursor)
        plan.append((batch_number, tuple(range(cursor, cursor + count)), min(batch_number, batch_size)))
        cursor += count
        batch_number += 1
    return plan


def colorize_translate_target_count(
    batch_number: int, batch_size: int, completed_count: int, remaining: int
) -> int:
    """Targets for a colorize-and-translate batch.

    Floored at one page so a run with no completed pages still advances.
    """
    target = 1 if batch_number == 1 else min(batch_number, batch_size, completed_count)
    return max(1, min(target, remaining))


def count_colorize_translate_batches(
    total_pages: int,
    batch_size: int,
    *,
    cursor: int = 0,
    batch_number: int = 1,
    completed_count: int = 0,
) -> int:
    """Batches still needed from ``cursor`` on, assuming every remaining page succeeds."""
    batches = 0
    while cursor < total_pages:
        count = colorize_translate_target_count(
            batch_number, batch_size, completed_count, total_pages - cursor
        )
        cursor += count
        completed_count += count
        batch_number += 1
        batches += 1
    return batches


# -- Request building ---------------------------------------------------------


def reference_parts(store: PageStore, ordinals: Sequence[int], *, translated: bool) -> list[ContentPart]:
    parts: list[ContentPart] = []
    for ordinal in ordinals:
        result = store.result_of(ordinal)
        if result is None:
            continue
        parts.append(TextPart(reference_label(ordinal, translated=translated)))
        parts.append(ImagePart(data=result.image_bytes, mime_type=result.mime_type))
    return parts


def source_part(store: PageStore, ordinal: int) -> ImagePart:
    page = store.get(ordinal)
    return ImagePart(data=page.source_bytes, mime_type=page.source_mime_type)


def single_page_parts(
    store: PageStore,
    mode: Mode,
    config: ProcessingConfig,
    ordinal: int,
    refs: Sequence[int],
) -> list[ContentPart]:
    """Content for a one-page request: references, the page, then the instruction."""
    source = source_part(store, ordinal)
    if mode is Mode.TRANSLATE:
        prompt = translate_prompt(
            config.from_language or "",
            config.to_language or "",
            aspect_ratio_for(source.data),
            config.display_both_languages,
        )
        return [TextPart(prompt), source]

    translated = mode is Mode.COLORIZE_AND_TRANSLATE
    parts = reference_parts(store, refs, translated=translated)
    parts.append(TextPart(target_label(ordinal, translated=translated)))
    parts.append(source)
    if translated:
        parts.append(
            TextPart(
                colorize_translate_prompt(
                    len(refs),
                    aspect_ratio_for(source.data),
                    config.from_language or "",
                    config.to_language or "",
                    config.display_both_languages,
                )
            )
        )
    else:
        parts.append(TextPart(colorize_prompt(len(refs))))
    return parts


def correlation_id(mode: Mode, batch_number: int, ordinals: Sequence[int]) -> str:
    pages = "_".join(str(o + 1) for o in ordinals)
    return f"{mode.value}_batch{batch_number}_pages_{pages}_{generate_request_id()[:8]}"


# -- Schedulers ---------------------------------------------------------------


@dataclass
class RunContext:
    store: PageStore
    bus: EventBus
    client: ImageModelClient
    observer: RunObserver
    state: RunState
    epoch: int
    api_key: str | None
    report_error: Callable[[ClassifiedError], None]


class BatchScheduler(ABC):
    mode: Mode

    def __init__(self, ctx: RunContext) -> None:
        self._ctx = ctx
        self._store = ctx.store
        self._state = ctx.state
        self._config = ctx.state.config

    @abstractmethod
    async def run(self) -> None: ...

    async def _call(
        self, parts: Sequence[ContentPart], corr_id: str, attempts: Sequence[Attempt]
    ) -> list[GeneratedImage] | None:
        """Issue one request; None if every target timed out before it answered."""
        notify(self._ctx.observer, "on_request", corr_id, parts)
        try:
            images = await self._ctx.bus.await_while(
                self._ctx.client.submit(self._ctx.api_key, parts, self._config.resolution, corr_id),
                lambda: any(self._store.is_live(a) for a in attempts),
            )
        except Exception as e:
            notify(self._ctx.observer, "on_error", corr_id, e)
            raise
        if images is None:
            logger.warning(
                "Abandoned request, its pages already timed out",
                extra={"correlation_id": corr_id},
            )
            return None
        notify(self._ctx.observer, "on_response", corr_id, images)
        return images

    def _begin_batch(self, batch: Batch) -> list[Attempt]:
        self._state.current_batch_number = batch.batch_number
        logger.info(
            "%s batch %d/%d: targets=%s refs=%s",
            self.mode.value,
            batch.batch_number,
            self._state.total_batches,
            list(batch.target_ordinals),
            list(batch.reference_ordinals),
        )
        return self._store.mark_processing(batch.target_ordinals)

    def _complete(self, attempt: Attempt, image: GeneratedImage) -> None:
        self._ctx.bus.publish(events.completed(attempt, self._ctx.epoch, image.data, image.mime_type))

    def _fail(self, attempt: Attempt, ordinal: int, error: BaseException, corr_id: str) -> None:
        classified = classify_error(error)
        logger.warning(
            "Page %d failed (%s): %s",
            ordinal,
            classified.kind.value,
            error,
            extra={"correlation_id": corr_id},
        )
        self._ctx.report_error(classified)
        self._ctx.bus.publish(events.failed(attempt, self._ctx.epoch, classified.kind.value))

    def _check_window(self, batch_number: int, wanted: int, refs: Sequence[int]) -> None:
        if len(refs) < wanted:
            logger.warning(
                "Batch %d: %s, wanted %d references but only %d completed",
                batch_number,
                ErrorKind.INSUFFICIENT_WINDOW.value,
                wanted,
                len(refs),
            )
            notify(self._ctx.observer, "on_window_shortfall", batch_number, wanted, len(refs))

    async def _settle(self, coros: Sequence[Awaitable[None]]) -> None:
        """Run one batch's requests concurrently; each ends once answered or abandoned."""
        tasks = [asyncio.ensure_future(c) for c in coros]
        try:
            await asyncio.gather(*tasks)
        except RequestNotAttemptedError:
            for t in tasks:
                t.cancel()
            raise
        await self._ctx.bus.drain()

    def _done_in_store(self, ordinals: Sequence[int]) -> list[int]:
        return [o for o in ordinals if self._store.status(o) is PageStatus.DONE]

    async def _single_page(
        self, batch_number: int, ordinal: int, attempt: Attempt, refs: Sequence[int]
    ) -> None:
        corr_id = correlation_id(self.mode, batch_number, (ordinal,))
        try:
            parts = single_page_parts(self._store, self.mode, self._config, ordinal, refs)
            images = await self._call(parts, corr_id, (attempt,))
            if images is None:
                return
            if not images:
                raise NoImageGeneratedError(ordinal)
        except RequestNotAttemptedError:
            raise
        except Exception as e:
            self._fail(attempt, ordinal, e, corr_id)
            return
        self._complete(attempt, images[0])


class TranslateScheduler(BatchScheduler):
    mode = Mode.TRANSLATE

    async def run(self) -> None:
        batches = plan_translate_batches(len(self._store), self._config.batch_size)
        self._state.total_batches = len(batches)

        for batch_number, targets in enumerate(batches, start=1):
            attempts = self._begin_batch(Batch(batch_number, targets))
            await self._settle(
                [
                    self._single_page(batch_number, ordinal, attempt, ())
                    for ordinal, attempt in zip(targets, attempts)
                ]
            )


class ColorizeScheduler(BatchScheduler):
    """One combined request per batch: all references, all targets, one instruction."""

    mode = Mode.COLORIZE

    async def run(self) -> None:
        plan = plan_colorize_batches(len(self._store), self._config.batch_size)
        self._state.total_batches = len(plan)

        for batch_number, targets, wanted_refs in plan:
            refs = build_window(self._state.completed_ordinals, wanted_refs)
            self._check_window(batch_number, wanted_refs, refs)
            batch = Batch(batch_number, targets, tuple(refs))
            attempts = self._begin_batch(batch)

            parts = reference_parts(self._store, refs, translated=False)
            for ordinal in targets:
                parts.append(TextPart(target_label(ordinal)))
                parts.append(source_part(self._store, ordinal))
            parts.append(TextPart(colorize_prompt(len(refs))))

            await self._settle([self._combined(batch, attempts, parts)])
            self._state.completed_ordinals.extend(self._done_in_store(targets))

    async def _combined(
        self, batch: Batch, attempts: Sequence[Attempt], parts: Sequence[ContentPart]
    ) -> None:
        corr_id = correlation_id(self.mode, batch.batch_number, batch.target_ordinals)
        try:
            images = await self._call(parts, corr_id, attempts)
        except RequestNotAttemptedError:
            raise
        except Exception as e:
            for ordinal, attempt in zip(batch.target_ordinals, attempts):
                self._fail(attempt, ordinal, e, corr_id)
            return
        if images is None:
            return

        # Results map to targets by position; a short list leaves trailing targets empty.
        for i, (ordinal, attempt) in enumerate(zip(batch.target_ordinals, attempts)):
            if i < len(images):
                self._complete(attempt, images[i])
            else:
                self._fail(attempt, ordinal, NoImageGeneratedError(ordinal), corr_id)


class ColorizeTranslateScheduler(BatchScheduler):
    """One request per target page, all sharing the batch's reference window."""

    mode = Mode.COLORIZE_AND_TRANSLATE

    async def run(self) -> None:
        total = len(self._store)
        batch_size = self._config.batch_size
        completed = self._state.completed_ordinals
        self._state.total_batches = count_colorize_translate_batches(total, batch_size)

        cursor = 0
        batch_number = 1
        while cursor < total:
            if batch_number > 1 and min(batch_number, batch_size, len(completed)) == 0:
                self._check_window(batch_number, 1, ())
            count = colorize_translate_target_count(
                batch_number, batch_size, len(completed), total - cursor
            )
            targets = tuple(range(cursor, cursor + count))
            refs = build_window(completed, min(batch_size, len(completed)))
            attempts = self._begin_batch(Batch(batch_number, targets, tuple(refs)))

            await self._settle(
                [
                    self._single_page(batch_number, ordinal, attempt, refs)
                    for ordinal, attempt in zip(targets, attempts)
                ]
            )
            # Whole batch settled: add its successes in ordinal order.
            completed.extend(sorted(self._done_in_store(targets)))

            cursor += count
            batch_number += 1
            self._state.total_batches = (batch_number - 1) + count_colorize_translate_batches(
                total,
                batch_size,
                cursor=cursor,
                batch_number=batch_number,
                completed_count=len(completed),
            )


SCHEDULERS: dict[Mode, type[BatchScheduler]] = {
    Mode.TRANSLATE: TranslateScheduler,
    Mode.COLORIZE: ColorizeScheduler,
    Mode.COLORIZE_AND_TRANSLATE: ColorizeTranslateScheduler,
}


def scheduler_for(mode: Mode, ctx: RunContext) -> BatchScheduler:
    return SCHEDULERS[mode](ctx)
