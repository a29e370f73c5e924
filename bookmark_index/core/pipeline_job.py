"""Indexing pipeline orchestrating fetch -> chunk+embed.

This module coordinates an indexing run:
1. FETCH: download every page (bounded concurrency, default 10)
2. CHUNK_EMBED: chunk and embed every fetched page (default 5)

Stages run strictly one after the other over the same items. Only items
that completed a stage move on to the next one. Lifecycle events go to an
event sink supplied at construction time.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from bookmark_index.core.cancellation import CancelToken
from bookmark_index.core.queue_item import ItemStatus, PageSeed, PipelineStage, QueueItem
from bookmark_index.core.settings import Settings
from bookmark_index.core.stage_runner import ItemOutcome, RunControls, StageRunner
from bookmark_index.core.stages import ChunkEmbedStage, FetchStage, StageProcessor
from bookmark_index.core.storage import PageRecord, PersistedSlice, Storage, open_db

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY: dict[PipelineStage, int] = {
    PipelineStage.FETCH: 10,
    PipelineStage.CHUNK_EMBED: 5,
}


class PipelineEventType(str, Enum):
    """Lifecycle events emitted by the pipeline."""

    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class PipelineEvent:
    """Event emitted during a pipeline run."""

    type: PipelineEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        event_data = {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }
        return f"event: {self.type.value}\ndata: {json.dumps(event_data)}\n\n"


EventSink = Callable[[PipelineEvent], None]


@dataclass
class PipelineConfig:
    """Per-stage concurrency for a run."""

    concurrency: dict[PipelineStage, int] = field(default_factory=lambda: dict(DEFAULT_CONCURRENCY))

    def __post_init__(self) -> None:
        for stage, value in self.concurrency.items():
            if value < 1:
                raise ValueError(f"Concurrency for {stage.value} must be at least 1, got {value}")

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            concurrency={
                PipelineStage.FETCH: settings.fetch_concurrency,
                PipelineStage.CHUNK_EMBED: settings.chunk_concurrency,
            }
        )


@dataclass
class StageMetrics:
    """Counters for a run (or for one stage of it)."""

    items_processed: int = 0
    items_failed: int = 0
    items_indexed: int = 0
    items_skipped: int = 0
    start_time: datetime | None = None
    peak_active_workers: int = 0
    avg_time_per_item: float = 0.0  # milliseconds

    def record(self, outcome: ItemOutcome) -> None:
        if outcome.skipped:
            self.items_skipped += 1
            return
        self.items_processed += 1
        if not outcome.success:
            self.items_failed += 1
        # Running mean over processed items
        n = self.items_processed
        self.avg_time_per_item += (outcome.duration_ms - self.avg_time_per_item) / n

    def to_dict(self) -> dict[str, Any]:
        return {
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "items_indexed": self.items_indexed,
            "items_skipped": self.items_skipped,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "peak_active_workers": self.peak_active_workers,
            "avg_time_per_item": round(self.avg_time_per_item, 2),
        }


@dataclass
class StageProgress:
    """Progress of one stage in the current or last run."""

    stage: PipelineStage
    processed: int
    failed: int
    skipped: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class PipelineState:
    """Point-in-time snapshot returned by get_status()."""

    is_running: bool
    is_paused: bool
    current_stage: PipelineStage | None
    metrics: StageMetrics

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "metrics": self.metrics.to_dict(),
        }


class IndexingPipeline:
    """Runs seeds through fetch and chunk+embed, one run at a time.

    Pause and stop may be called from any task while start() is awaited.
    get_status() may be called from any thread.
    """

    def __init__(
        self,
        storage: Storage,
        fetch_stage: StageProcessor,
        chunk_stage: StageProcessor,
        event_sink: EventSink | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self._storage = storage
        self._stages: list[StageProcessor] = [fetch_stage, chunk_stage]
        self._event_sink = event_sink
        self._config = config or PipelineConfig()

        self._lock = threading.Lock()
        self._is_running = False
        self._active = False  # Set for the whole of start(), even after stop()
        self._controls = RunControls()
        self._current_stage: PipelineStage | None = None
        self._metrics = StageMetrics()
        self._stage_metrics: dict[PipelineStage, StageMetrics] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        storage: Storage | None = None,
        event_sink: EventSink | None = None,
    ) -> IndexingPipeline:
        """Wire storage, stages and concurrency from settings (the environment by default)."""
        s = settings or Settings.from_env()
        return cls(
            storage=storage if storage is not None else open_db(s),
            fetch_stage=FetchStage.from_settings(s),
            chunk_stage=ChunkEmbedStage.from_settings(s),
            event_sink=event_sink,
            config=PipelineConfig.from_settings(s),
        )

    @property
    def config(self) -> PipelineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, seeds: list[PageSeed], config: PipelineConfig | None = None) -> list[QueueItem]:
        """Run all seeds through the pipeline.

        Returns the queue items in seed order with their final status, or
        an empty list if a run was already active.
        """
        with self._lock:
            if self._active:
                logger.warning("Pipeline already running, ignoring start request")
                return []
            self._active = True
            self._is_running = True
            self._controls = RunControls(paused=False, cancel_token=CancelToken())
            self._current_stage = None
            self._metrics = StageMetrics(start_time=datetime.now(timezone.utc))
            self._stage_metrics = {stage.stage: StageMetrics() for stage in self._stages}
            if config is not None:
                self._config = PipelineConfig(concurrency={**self._config.concurrency, **config.concurrency})

        items = [QueueItem.from_seed(seed) for seed in seeds]

        try:
            self._persist_seeds(items)

            if items:
                logger.info(f"Pipeline starting with {len(items)} items")
            else:
                logger.info("Pipeline started with 0 items to process")
            self._emit(PipelineEventType.STARTED, {"items_total": len(items)})

            batch = items
            for processor in self._stages:
                if self._controls.cancelled:
                    break
                batch = await self._run_stage(processor, batch)

            cancelled = self._controls.cancelled
            logger.info(f"Pipeline {'stopped' if cancelled else 'completed'}: {self._metrics.to_dict()}")
            self._emit(
                PipelineEventType.COMPLETED,
                {"cancelled": cancelled, "metrics": self.get_status().metrics.to_dict()},
            )

        except Exception as e:
            logger.exception("Pipeline error")
            self._emit(PipelineEventType.ERROR, {"error": str(e)})

        finally:
            with self._lock:
                self._is_running = False
                self._active = False
                self._controls.paused = False
                self._current_stage = None

        return items

    def pause(self) -> None:
        """Stop dispatching new items. In-flight items finish."""
        with self._lock:
            if not self._is_running:
                logger.warning("Pause requested while pipeline is idle")
                return
            self._controls.paused = True
        logger.info("Pipeline paused")
        self._emit(PipelineEventType.PAUSED)

    def resume(self) -> None:
        """Continue dispatching after pause()."""
        with self._lock:
            if not self._is_running:
                logger.warning("Resume requested while pipeline is idle")
                return
            self._controls.paused = False
        logger.info("Pipeline resumed")
        self._emit(PipelineEventType.RESUMED)

    def stop(self) -> None:
        """Cancel the active run. Safe to call repeatedly or while idle."""
        with self._lock:
            was_running = self._is_running
            self._is_running = False
            self._controls.cancel_token.cancel()
        if was_running:
            logger.info("Pipeline stopped")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._is_running

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._controls.paused

    def get_status(self) -> PipelineState:
        """Snapshot of the run state. Metrics are copied."""
        with self._lock:
            return PipelineState(
                is_running=self._is_running,
                is_paused=self._controls.paused,
                current_stage=self._current_stage,
                metrics=replace(self._metrics),
            )

    def get_stage_progress(self, stage: PipelineStage) -> StageProgress | None:
        """Counts for one stage of the current or last run, None before any run."""
        with self._lock:
            metrics = self._stage_metrics.get(stage)
            if metrics is None:
                return None
            return StageProgress(
                stage=stage,
                processed=metrics.items_processed,
                failed=metrics.items_failed,
                skipped=metrics.items_skipped,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_stage(self, processor: StageProcessor, items: list[QueueItem]) -> list[QueueItem]:
        stage = processor.stage
        concurrency = self._config.concurrency.get(stage, DEFAULT_CONCURRENCY.get(stage, 1))
        logger.info(f"Processing stage: {stage.value} ({len(items)} items)")

        with self._lock:
            self._current_stage = stage

        is_final = processor is self._stages[-1]
        runner = StageRunner(
            processor,
            concurrency=concurrency,
            controls=self._controls,
            on_success=self._persist_result if is_final else None,
            on_failure=self._persist_failure,
            on_outcome=lambda outcome: self._record(stage, outcome, is_final),
            on_dispatch=lambda active: self._record_dispatch(stage, active),
        )
        await runner.run(items)

        # Failed and skipped items have nothing for the next stage
        return [item for item in items if item.status == ItemStatus.COMPLETED]

    def _record_dispatch(self, stage: PipelineStage, active: int) -> None:
        with self._lock:
            stage_metrics = self._stage_metrics[stage]
            stage_metrics.peak_active_workers = max(stage_metrics.peak_active_workers, active)
            self._metrics.peak_active_workers = max(self._metrics.peak_active_workers, active)

    def _record(self, stage: PipelineStage, outcome: ItemOutcome, is_final: bool) -> None:
        with self._lock:
            self._metrics.record(outcome)
            self._stage_metrics[stage].record(outcome)
            if is_final and outcome.success:
                self._metrics.items_indexed += 1
                self._stage_metrics[stage].items_indexed += 1

    def _persist_seeds(self, items: list[QueueItem]) -> None:
        for item in items:
            if not item.url:
                continue
            try:
                existing = self._storage.get_persisted_item(item.url)
                if existing is None:
                    record = PageRecord(url=item.url, title=item.title)
                else:
                    record = replace(existing, title=item.title)
                    item.retry_count = existing.retry_count
                self._storage.save_persisted_item(record)
            except Exception:
                logger.exception(f"Error adding page {item.url}")

    def _persist_result(self, item: QueueItem) -> None:
        """Save an item's slices and mark its page processed."""
        for chunk in item.chunks or []:
            self._storage.save_slice(PersistedSlice.from_chunk(item.url, item.title, chunk))

        record = self._storage.get_persisted_item(item.url) or PageRecord(url=item.url, title=item.title)
        self._storage.save_persisted_item(
            replace(record, processed=True, error=None, indexed_at=datetime.now(timezone.utc))
        )
        logger.debug(f"Indexed {item.url} ({len(item.chunks or [])} slices)")

    def _persist_failure(self, item: QueueItem) -> None:
        """Record the error and attempt time for the retry cooldown."""
        record = self._storage.get_persisted_item(item.url) or PageRecord(url=item.url, title=item.title)
        item.retry_count = record.retry_count + 1
        self._storage.save_persisted_item(
            replace(
                record,
                processed=False,
                error=item.error,
                indexed_at=datetime.now(timezone.utc),
                retry_count=item.retry_count,
            )
        )

    def _emit(self, event_type: PipelineEventType, data: dict[str, Any] | None = None) -> None:
        if self._event_sink is None:
            return
        event = PipelineEvent(type=event_type, data=data or {})
        try:
            self._event_sink(event)
        except Exception:
            logger.exception(f"Event listener failed for {event_type.value}")
