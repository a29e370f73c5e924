"""Work items flowing through the indexing pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from bookmark_index.core.chunking import Chunk


class PipelineStage(str, Enum):
    """Stages of the indexing pipeline, in execution order."""

    FETCH = "fetch"
    CHUNK_EMBED = "chunk_embed"


class ItemStatus(str, Enum):
    """Status of an item within its current stage."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    """Durable resume marker that survives stage boundaries."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    CHUNKING = "chunking"
    CHUNKED = "chunked"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PageSeed:
    """A document to index, as supplied by a source enumerator."""

    url: str
    title: str = ""
    id: str | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueItem:
    """A page moving through the pipeline.

    Holds either the fetched raw content or the produced chunks, never both:
    assigning one replaces the other.
    """

    id: str
    url: str
    title: str
    stage: PipelineStage = PipelineStage.FETCH
    status: ItemStatus = ItemStatus.PENDING
    queue_status: QueueStatus = QueueStatus.PENDING
    error: str | None = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    _payload: str | list[Chunk] | None = field(default=None, repr=False)

    @classmethod
    def from_seed(cls, seed: PageSeed) -> QueueItem:
        return cls(id=seed.id or seed.url, url=seed.url, title=seed.title or seed.url)

    @property
    def raw_content(self) -> str | None:
        return self._payload if isinstance(self._payload, str) else None

    @raw_content.setter
    def raw_content(self, value: str | None) -> None:
        if value is not None:
            self._payload = value
        elif isinstance(self._payload, str):
            self._payload = None

    @property
    def chunks(self) -> list[Chunk] | None:
        return self._payload if isinstance(self._payload, list) else None

    @chunks.setter
    def chunks(self, value: list[Chunk] | None) -> None:
        if value is not None:
            self._payload = list(value)
        elif isinstance(self._payload, list):
            self._payload = None

    def touch(self) -> None:
        """Update updated_at timestamp."""
        self.updated_at = _now()

    def enter_stage(self, stage: PipelineStage) -> None:
        """Reset per-stage status before the item is queued for a stage."""
        self.stage = stage
        self.status = ItemStatus.PENDING
        self.queue_status = QueueStatus.PENDING
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization (content omitted)."""
        chunks = self.chunks
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "stage": self.stage.value,
            "status": self.status.value,
            "queue_status": self.queue_status.value,
            "has_raw_content": self.raw_content is not None,
            "chunk_count": len(chunks) if chunks is not None else None,
            "error": self.error,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
