"""Bounded worker pool that drives one stage over a batch of items.

A fixed number of workers pull items from a shared queue. Pausing stops
workers from taking new items; in-flight items always run to completion.
Cancelling stops dispatch and fires the token that in-flight work observes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from bookmark_index.core.cancellation import CancelToken
from bookmark_index.core.queue_item import ItemStatus, QueueItem, QueueStatus
from bookmark_index.core.stages import StageProcessor

logger = logging.getLogger(__name__)

# Seconds between checks of the paused flag
PAUSE_POLL_INTERVAL = 0.1


@dataclass
class RunControls:
    """Flags shared between an orchestrator and its active runner."""

    paused: bool = False
    cancel_token: CancelToken = field(default_factory=CancelToken)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled


@dataclass
class ItemOutcome:
    """Result of one item passing through a stage."""

    item: QueueItem
    success: bool
    skipped: bool = False
    error: str | None = None
    duration_ms: float = 0.0


class StageRunner:
    """Runs a StageProcessor over items with at most `concurrency` in flight.

    One item's failure never stops the batch: any exception raised while
    processing or persisting an item marks that item failed and the worker
    moves on.

    Callbacks (all optional, all synchronous):
        on_success(item): persist a successful item. Raising fails the item.
        on_failure(item): persist a failed item's error.
        on_outcome(outcome): report every outcome, skipped items included.
        on_dispatch(active): called as each item starts, with the number in flight.
    """

    def __init__(
        self,
        processor: StageProcessor,
        concurrency: int | None = None,
        controls: RunControls | None = None,
        on_success: Callable[[QueueItem], None] | None = None,
        on_failure: Callable[[QueueItem], None] | None = None,
        on_outcome: Callable[[ItemOutcome], None] | None = None,
        on_dispatch: Callable[[int], None] | None = None,
    ) -> None:
        concurrency = concurrency if concurrency is not None else processor.concurrency
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        self.processor = processor
        self.concurrency = concurrency
        self.controls = controls or RunControls()
        self._on_success = on_success
        self._on_failure = on_failure
        self._on_outcome = on_outcome
        self._on_dispatch = on_dispatch

        self._active = 0
        self._peak_active = 0

    @property
    def active_workers(self) -> int:
        """Number of items currently being processed."""
        return self._active

    @property
    def peak_active_workers(self) -> int:
        """Highest number of items processed at the same time."""
        return self._peak_active

    async def run(self, items: list[QueueItem]) -> list[ItemOutcome]:
        """Process items through the stage.

        Returns outcomes in completion order. Items never dispatched because
        of cancellation have no outcome and keep their pending status.
        """
        name = self.processor.name
        outcomes: list[ItemOutcome] = []
        queue: asyncio.Queue[QueueItem] = asyncio.Queue()

        for item in items:
            item.enter_stage(self.processor.stage)
            if self.processor.should_process(item):
                queue.put_nowait(item)
            else:
                self._skip(item, outcomes)

        logger.info(f"{name}: {queue.qsize()} items queued (concurrency={self.concurrency})")

        await self.processor.setup()
        try:
            worker_count = min(self.concurrency, queue.qsize())
            workers = [asyncio.create_task(self._worker(queue, outcomes)) for _ in range(worker_count)]
            if workers:
                await asyncio.gather(*workers)
        finally:
            await self.processor.teardown()

        if self.controls.cancelled and not queue.empty():
            logger.info(f"{name}: cancelled with {queue.qsize()} items not started")
        return outcomes

    async def _worker(self, queue: asyncio.Queue[QueueItem], outcomes: list[ItemOutcome]) -> None:
        while True:
            while self.controls.paused and not self.controls.cancelled:
                await asyncio.sleep(PAUSE_POLL_INTERVAL)
            if self.controls.cancelled:
                return
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcome = await self._process_item(item)
            outcomes.append(outcome)
            self._report(outcome)

    async def _process_item(self, item: QueueItem) -> ItemOutcome:
        processor = self.processor
        started = time.monotonic()

        item.status = ItemStatus.PROCESSING
        item.queue_status = processor.active_status
        item.touch()

        self._active += 1
        self._peak_active = max(self._peak_active, self._active)
        try:
            if self._on_dispatch is not None:
                self._on_dispatch(self._active)
            await processor.process(item, self.controls.cancel_token)
            item.status = ItemStatus.COMPLETED
            item.queue_status = processor.done_status
            item.error = None
            if self._on_success is not None:
                self._on_success(item)
        except Exception as e:
            item.status = ItemStatus.FAILED
            item.queue_status = QueueStatus.FAILED
            item.error = str(e) or type(e).__name__
            logger.error(f"{processor.name} failed for {item.url}: {item.error}")
            self._persist_failure(item)
        finally:
            self._active -= 1
            item.touch()

        duration_ms = (time.monotonic() - started) * 1000
        logger.debug(f"{processor.name} finished {item.url} in {duration_ms:.0f}ms")
        return ItemOutcome(
            item=item,
            success=item.status == ItemStatus.COMPLETED,
            error=item.error,
            duration_ms=duration_ms,
        )

    def _skip(self, item: QueueItem, outcomes: list[ItemOutcome]) -> None:
        item.queue_status = QueueStatus.SKIPPED
        item.error = f"Skipped by {self.processor.name}"
        item.touch()
        logger.info(f"{self.processor.name}: skipping item {item.id!r} ({item.error})")
        outcome = ItemOutcome(item=item, success=False, skipped=True, error=item.error)
        outcomes.append(outcome)
        self._report(outcome)

    def _persist_failure(self, item: QueueItem) -> None:
        if self._on_failure is None:
            return
        try:
            self._on_failure(item)
        except Exception:
            logger.exception(f"Could not record failure for {item.url}")

    def _report(self, outcome: ItemOutcome) -> None:
        if self._on_outcome is not None:
            self._on_outcome(outcome)
