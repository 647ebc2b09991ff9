"""In-memory page store and per-page status state machine.

Every page mutation goes through a method on PageStore. Methods are plain
(non-async) functions, so on the event loop each one runs to completion
without interleaving; the done counter is always updated in the same call as
the status change that affects it.

Allowed transitions::

    pending -> waiting -> processing -> done | failed
    done | failed -> processing          (rerun only)

``reset_all`` (start of a run) and ``revert_unfinished`` (run abort) put pages
back to ``pending`` wholesale; they are lifecycle resets, not transitions.

Results are accepted only for pages still in ``processing`` and only when they
carry the store's current epoch. The epoch changes on clear, on run start and
on run abort, which drops results from calls issued before that point. Each entry into
``processing`` also bumps the page's attempt number, and an outcome naming an
earlier attempt is dropped, so a late answer to a timed-out rerun cannot land
on the next one.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable, Sequence

from manana_service.pipeline.errors import InvalidTransitionError, PageNotFoundError
from manana_service.pipeline.types import Attempt, Page, PageStatus, PageView, ProcessedResult

logger = logging.getLogger(__name__)

_ALLOWED: dict[PageStatus, set[PageStatus]] = {
    PageStatus.PENDING: {PageStatus.WAITING},
    PageStatus.WAITING: {PageStatus.PROCESSING},
    PageStatus.PROCESSING: {PageStatus.DONE, PageStatus.FAILED},
    PageStatus.DONE: set(),
    PageStatus.FAILED: set(),
}

_RERUNNABLE = {PageStatus.DONE, PageStatus.FAILED}


class PageStore:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._pages: list[Page] = []
        self._by_id: dict[str, Page] = {}
        self._epoch = 0
        self._done_count = 0

    # -- Reads ----------------------------------------------------------------

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def processed_count(self) -> int:
        return self._done_count

    def __len__(self) -> int:
        return len(self._pages)

    def get(self, ordinal: int) -> Page:
        if ordinal < 0 or ordinal >= len(self._pages):
            raise PageNotFoundError(ordinal)
        return self._pages[ordinal]

    def status(self, ordinal: int) -> PageStatus:
        return self.get(ordinal).status

    def has_result(self, ordinal: int) -> bool:
        return 0 <= ordinal < len(self._pages) and self._pages[ordinal].has_result

    def any_processing(self) -> bool:
        return any(p.status is PageStatus.PROCESSING for p in self._pages)

    def processing_pages(self) -> list[tuple[Attempt, float]]:
        """(attempt, processing_started_at) for every page in processing."""
        return [
            (Attempt(p.id, p.attempt), p.processing_started_at)
            for p in self._pages
            if p.status is PageStatus.PROCESSING and p.processing_started_at is not None
        ]

    def views(self) -> tuple[PageView, ...]:
        return tuple(_view(p) for p in self._pages)

    def view(self, page_id: str) -> PageView | None:
        page = self._by_id.get(page_id)
        return _view(page) if page is not None else None

    # -- Structure ------------------------------------------------------------

    def add_pages(self, items: Iterable[tuple[str, bytes, str]]) -> list[Page]:
        """Append pages from (name, bytes, mime_type); ordinals continue from the end."""
        added: list[Page] = []
        for name, data, mime_type in items:
            page = Page(
                id=uuid.uuid4().hex[:12],
                ordinal=len(self._pages),
                name=name,
                source_bytes=data,
                source_mime_type=mime_type or "image/png",
            )
            self._pages.append(page)
            self._by_id[page.id] = page
            added.append(page)
        return added

    def remove(self, ordinal: int) -> Page:
        page = self.get(ordinal)
        del self._pages[ordinal]
        del self._by_id[page.id]
        if page.status is PageStatus.DONE:
            self._done_count -= 1
        self._renumber()
        return page

    def clear(self) -> None:
        self._pages = []
        self._by_id = {}
        self._done_count = 0
        self._epoch += 1

    def reorder(self, order: Sequence[int]) -> None:
        """Rearrange pages so that ``order[i]`` (a current ordinal) becomes ordinal ``i``."""
        n = len(self._pages)
        if sorted(order) != list(range(n)):
            raise ValueError(f"Reorder must be a permutation of 0..{n - 1}")
        self._pages = [self._pages[i] for i in order]
        self._renumber()

    def sort_by_name(self, *, descending: bool = False) -> None:
        self._pages.sort(key=lambda p: p.name, reverse=descending)
        self._renumber()

    def _renumber(self) -> None:
        for i, page in enumerate(self._pages):
            page.ordinal = i

    # -- Lifecycle resets -----------------------------------------------------

    def reset_all(self) -> int:
        """Return every page to pending with no result; returns the new epoch."""
        for page in self._pages:
            page.status = PageStatus.PENDING
            page.processing_started_at = None
            page.result_bytes = None
            page.result_mime_type = None
            page.error_kind = None
        self._done_count = 0
        self._epoch += 1
        return self._epoch

    def revert_unfinished(self) -> list[int]:
        """Return pending/waiting/processing pages to pending after an aborted run."""
        reverted: list[int] = []
        for page in self._pages:
            if page.status in (PageStatus.PENDING, PageStatus.WAITING, PageStatus.PROCESSING):
                page.status = PageStatus.PENDING
                page.processing_started_at = None
                reverted.append(page.ordinal)
        self._epoch += 1
        return reverted

    # -- Transitions ----------------------------------------------------------

    def _transition(self, page: Page, target: PageStatus, *, rerun: bool = False) -> None:
        allowed = _ALLOWED[page.status]
        if rerun and page.status in _RERUNNABLE and target is PageStatus.PROCESSING:
            allowed = {PageStatus.PROCESSING}
        if target not in allowed:
            raise InvalidTransitionError(
                f"Page {page.ordinal}: {page.status.value} -> {target.value} is not allowed"
            )
        if page.status is PageStatus.DONE:
            self._done_count -= 1
        if target is PageStatus.DONE:
            self._done_count += 1
        page.status = target

    def mark_waiting(self, ordinals: Iterable[int]) -> None:
        for ordinal in ordinals:
            self._transition(self.get(ordinal), PageStatus.WAITING)

    def mark_processing(self, ordinals: Iterable[int], *, rerun: bool = False) -> list[Attempt]:
        """Move pages to processing, stamping the start time; returns one Attempt per page."""
        now = self._clock()
        attempts: list[Attempt] = []
        for ordinal in ordinals:
            page = self.get(ordinal)
            self._transition(page, PageStatus.PROCESSING, rerun=rerun)
            page.processing_started_at = now
            page.error_kind = None
            page.attempt += 1
            attempts.append(Attempt(page.id, page.attempt))
        return attempts

    def complete(self, attempt: Attempt, epoch: int, data: bytes, mime_type: str) -> bool:
        """Store a result and mark the page done. False if the result was discarded."""
        page = self._accepting(attempt, epoch)
        if page is None:
            return False
        self._transition(page, PageStatus.DONE)
        page.result_bytes = data
        page.result_mime_type = mime_type
        page.error_kind = None
        return True

    def fail(self, attempt: Attempt, epoch: int, kind: str) -> bool:
        """Mark the page failed. False if the page already left processing.

        A failed rerun keeps the page's previous result bytes.
        """
        page = self._accepting(attempt, epoch)
        if page is None:
            return False
        self._transition(page, PageStatus.FAILED)
        page.error_kind = kind
        return True

    def is_live(self, attempt: Attempt) -> bool:
        """True while the page is still processing under this attempt."""
        page = self._by_id.get(attempt.page_id)
        return (
            page is not None
            and page.status is PageStatus.PROCESSING
            and page.attempt == attempt.number
        )

    def _accepting(self, attempt: Attempt, epoch: int) -> Page | None:
        page = self._by_id.get(attempt.page_id)
        if page is None or epoch != self._epoch:
            logger.debug("Discarding outcome for page %s (stale epoch or removed)", attempt.page_id)
            return None
        if page.attempt != attempt.number:
            logger.debug(
                "Discarding outcome of attempt %d for page %d, now on attempt %d",
                attempt.number,
                page.ordinal,
                page.attempt,
            )
            return None
        if page.status is not PageStatus.PROCESSING:
            logger.debug(
                "Discarding late outcome for page %d already %s", page.ordinal, page.status.value
            )
            return None
        return page

    def result_of(self, ordinal: int) -> ProcessedResult | None:
        page = self.get(ordinal)
        if page.result_bytes is None:
            return None
        return ProcessedResult(page.ordinal, page.result_bytes, page.result_mime_type or "image/png")


def _view(page: Page) -> PageView:
    return PageView(
        id=page.id,
        ordinal=page.ordinal,
        name=page.name,
        status=page.status,
        processing_started_at=page.processing_started_at,
        has_result=page.has_result,
        result_mime_type=page.result_mime_type,
        error_kind=page.error_kind,
    )
