"""Run controller: the single owner of the page store and of the active run.

Commands coming from the UI (HTTP API or CLI) land here:

- ``start_run`` / ``launch``: validate the config, reset every page and drive
  one scheduler to completion (awaited, or as a background task).
- ``clear``: drop all pages and the active run; in-flight results are ignored.
- ``rerun`` / ``launch_rerun``: re-execute one finished page outside any run.
- ``reorder``, ``remove``, ``sort_by_name``, ``add_pages``: structural edits,
  rejected while a run or a rerun is in progress.

Per-page failures are recorded as the "last error" and confined to their page.
``RequestNotAttemptedError`` aborts the run: unfinished pages return to
``pending`` and the run ends.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable, Iterable, Sequence

from manana_service.config import MANANA_PAGE_TIMEOUT_SECONDS, MANANA_TIMEOUT_POLL_SECONDS
from manana_service.logging_config import generate_request_id
from manana_service.pipeline import events
from manana_service.pipeline.errors import (
    ClassifiedError,
    NoImageGeneratedError,
    PageNotFoundError,
    RequestNotAttemptedError,
    RunActiveError,
    classify_error,
)
from manana_service.pipeline.events import EventBus
from manana_service.pipeline.gemini import ImageModelClient
from manana_service.pipeline.monitor import TimeoutMonitor
from manana_service.pipeline.observer import NullObserver, RunObserver, notify
from manana_service.pipeline.schedulers import RunContext, scheduler_for, single_page_parts
from manana_service.pipeline.store import PageStore
from manana_service.pipeline.types import (
    Attempt,
    Mode,
    PageView,
    ProcessingConfig,
    RunSnapshot,
    RunState,
    normalize_resolution,
)
from manana_service.pipeline.window import rerun_window

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class _RerunJob:
    ordinal: int
    attempt: Attempt
    epoch: int
    mode: Mode
    config: ProcessingConfig
    refs: tuple[int, ...]


class PipelineController:
    def __init__(
        self,
        client: ImageModelClient,
        *,
        observer: RunObserver | None = None,
        clock: Callable[[], float] = time.time,
        deadline_seconds: float = MANANA_PAGE_TIMEOUT_SECONDS,
        poll_seconds: float = MANANA_TIMEOUT_POLL_SECONDS,
    ) -> None:
        self.store = PageStore(clock=clock)
        self.bus = EventBus(self.store)
        self.monitor = TimeoutMonitor(
            self.store,
            self.bus,
            deadline_seconds=deadline_seconds,
            poll_seconds=poll_seconds,
            clock=clock,
        )
        self._client = client
        self._observer: RunObserver = observer or NullObserver()

        self._run: RunState | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._rerun_tasks: set[asyncio.Task[PageView]] = set()
        self._last_mode: Mode | None = None
        self._last_config: ProcessingConfig | None = None
        self._last_error: ClassifiedError | None = None

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        self.bus.start()
        self.monitor.start()

    async def aclose(self) -> None:
        self._cancel_inflight()
        await self.monitor.aclose()
        await self.bus.aclose()

    async def __aenter__(self) -> PipelineController:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # -- Observable state -----------------------------------------------------

    def is_run_active(self) -> bool:
        return self._run is not None

    @property
    def last_error(self) -> ClassifiedError | None:
        return self._last_error

    def snapshot(self) -> RunSnapshot:
        run = self._run
        return RunSnapshot(
            pages=self.store.views(),
            processed_count=self.store.processed_count,
            is_run_active=run is not None,
            mode=run.mode if run else self._last_mode,
            current_batch_number=run.current_batch_number if run else 0,
            total_batches=run.total_batches if run else 0,
            last_error_kind=self._last_error.kind.value if self._last_error else None,
            retry_after_seconds=self._last_error.retry_after_seconds if self._last_error else None,
        )

    def _report_error(self, classified: ClassifiedError) -> None:
        self._last_error = classified

    # -- Structural commands --------------------------------------------------

    def _ensure_idle(self, action: str) -> None:
        if self._run is not None:
            raise RunActiveError(f"Cannot {action} while a run is active")
        if self.store.any_processing():
            raise RunActiveError(f"Cannot {action} while a page is processing")

    def add_pages(self, items: Iterable[tuple[str, bytes, str]]) -> list[PageView]:
        self._ensure_idle("add pages")
        added = {p.id for p in self.store.add_pages(items)}
        return [v for v in self.store.views() if v.id in added]

    def remove(self, ordinal: int) -> None:
        self._ensure_idle("remove a page")
        page = self.store.remove(ordinal)
        logger.info("Removed page %s (%s)", page.id, page.name)

    def reorder(self, order: Sequence[int]) -> None:
        self._ensure_idle("reorder pages")
        self.store.reorder(order)

    def sort_by_name(self, *, descending: bool = False) -> None:
        self._ensure_idle("sort pages")
        self.store.sort_by_name(descending=descending)

    def clear(self) -> None:
        """Drop every page and the active run. Late results are discarded."""
        self._cancel_inflight()
        self._run = None
        self._last_error = None
        self.store.clear()
        logger.info("Cleared all pages")

    def _cancel_inflight(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        self._run_task = None
        for t in list(self._rerun_tasks):
            t.cancel()
        self._rerun_tasks.clear()

    # -- Runs -----------------------------------------------------------------

    def _prepare_run(self, mode: Mode, config: ProcessingConfig) -> RunState:
        self._ensure_idle("start a run")
        if len(self.store) == 0:
            raise ValueError("No pages to process")
        config.validate(mode)
        config = dataclasses.replace(config, resolution=normalize_resolution(config.resolution))

        self.store.reset_all()
        self.store.mark_waiting(range(len(self.store)))
        state = RunState(mode=mode, config=config)
        self._run = state
        self._last_error = None
        self._last_mode = mode
        self._last_config = config
        return state

    async def _execute(self, state: RunState) -> None:
        ctx = RunContext(
            store=self.store,
            bus=self.bus,
            client=self._client,
            observer=self._observer,
            state=state,
            epoch=self.store.epoch,
            api_key=state.config.api_key,
            report_error=self._report_error,
        )
        scheduler = scheduler_for(state.mode, ctx)
        logger.info(
            "Run started: mode=%s pages=%d batch_size=%d resolution=%s",
            state.mode.value,
            len(self.store),
            state.config.batch_size,
            state.config.resolution,
        )
        try:
            await scheduler.run()
            logger.info(
                "Run finished: mode=%s done=%d/%d batches=%d",
                state.mode.value,
                self.store.processed_count,
                len(self.store),
                state.total_batches,
            )
        except RequestNotAttemptedError as e:
            self._abort(state, e)
        except Exception as e:
            self._abort(state, e)
            raise
        finally:
            if self._run is state:
                self._run = None

    def _abort(self, state: RunState, error: Exception) -> None:
        if self._run is not state:
            return
        classified = classify_error(error)
        self._last_error = classified
        reverted = self.store.revert_unfinished()
        logger.error(
            "Run aborted (%s): %s; %d page(s) returned to pending",
            classified.kind.value,
            error,
            len(reverted),
        )

    async def start_run(self, mode: Mode, config: ProcessingConfig) -> RunSnapshot:
        """Process every page in ``mode`` and return the final snapshot."""
        state = self._prepare_run(mode, config)
        await self._execute(state)
        return self.snapshot()

    def launch(self, mode: Mode, config: ProcessingConfig) -> asyncio.Task[None]:
        """Validate and start a run in the background."""
        state = self._prepare_run(mode, config)
        task = asyncio.create_task(self._execute(state), name=f"run-{mode.value}")
        task.add_done_callback(_log_task_failure)
        self._run_task = task
        return task

    # -- Rerun ----------------------------------------------------------------

    def _prepare_rerun(
        self, ordinal: int, mode: Mode | None, config: ProcessingConfig | None
    ) -> _RerunJob:
        if self._run is not None:
            raise RunActiveError("Cannot rerun a page while a run is active")
        mode = mode or self._last_mode
        config = config or self._last_config
        if mode is None or config is None:
            raise ValueError("No previous run: pass mode and config for the rerun")
        config.validate(mode)
        config = dataclasses.replace(config, resolution=normalize_resolution(config.resolution))

        self.store.get(ordinal)
        refs: tuple[int, ...] = ()
        if mode is not Mode.TRANSLATE:
            refs = tuple(rerun_window(ordinal, config.batch_size - 1, self.store.has_result))
        [attempt] = self.store.mark_processing([ordinal], rerun=True)
        return _RerunJob(ordinal, attempt, self.store.epoch, mode, config, refs)

    async def _execute_rerun(self, job: _RerunJob) -> PageView:
        corr_id = f"{job.mode.value}_rerun_page{job.ordinal + 1}_{generate_request_id()[:8]}"
        logger.info("Rerun page %d (%s) refs=%s", job.ordinal, job.mode.value, list(job.refs))
        try:
            parts = single_page_parts(self.store, job.mode, job.config, job.ordinal, job.refs)
            notify(self._observer, "on_request", corr_id, parts)
            images = await self.bus.await_while(
                self._client.submit(job.config.api_key, parts, job.config.resolution, corr_id),
                lambda: self.store.is_live(job.attempt),
            )
            if images is not None:
                notify(self._observer, "on_response", corr_id, images)
                if not images:
                    raise NoImageGeneratedError(job.ordinal)
        except Exception as e:
            notify(self._observer, "on_error", corr_id, e)
            classified = classify_error(e)
            logger.warning(
                "Rerun of page %d failed (%s): %s",
                job.ordinal,
                classified.kind.value,
                e,
                extra={"correlation_id": corr_id},
            )
            self._last_error = classified
            self.bus.publish(events.failed(job.attempt, job.epoch, classified.kind.value))
        else:
            if images is None:
                logger.warning(
                    "Abandoned rerun request for page %d, it already timed out",
                    job.ordinal,
                    extra={"correlation_id": corr_id},
                )
            else:
                self.bus.publish(
                    events.completed(job.attempt, job.epoch, images[0].data, images[0].mime_type)
                )
        await self.bus.drain()
        # looked up by id: the ordinal is only what it was when the rerun started
        view = self.store.view(job.attempt.page_id)
        if view is None:
            raise PageNotFoundError(job.ordinal)
        return view

    async def rerun(
        self, ordinal: int, *, mode: Mode | None = None, config: ProcessingConfig | None = None
    ) -> PageView:
        """Re-execute one done/failed page; defaults to the last run's mode and config."""
        job = self._prepare_rerun(ordinal, mode, config)
        return await self._execute_rerun(job)

    def launch_rerun(
        self, ordinal: int, *, mode: Mode | None = None, config: ProcessingConfig | None = None
    ) -> asyncio.Task[PageView]:
        job = self._prepare_rerun(ordinal, mode, config)
        task = asyncio.create_task(self._execute_rerun(job), name=f"rerun-{ordinal}")
        self._rerun_tasks.add(task)
        task.add_done_callback(self._rerun_tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task


def _log_task_failure(task: asyncio.Task) -> None:  # type: ignore[type-arg]
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)
