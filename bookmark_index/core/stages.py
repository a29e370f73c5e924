"""Stage processors for the indexing pipeline.

Provides:
- StageProcessor base class
- FetchStage: downloads raw page content
- ChunkEmbedStage: extracts text, chunks it and attaches embeddings
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from bookmark_index.core.cancellation import CancelToken, OperationCancelled
from bookmark_index.core.chunking import (
    MIN_TEXT_LENGTH,
    Chunk,
    extract_text_from_html,
    split_text_semantic,
)
from bookmark_index.core.content_fetcher import ContentFetcher
from bookmark_index.core.embedding_providers import EmbeddingError
from bookmark_index.core.embeddings import Embedder, EmbeddingClient
from bookmark_index.core.queue_item import PipelineStage, QueueItem, QueueStatus
from bookmark_index.core.settings import Settings

logger = logging.getLogger(__name__)


class ChunkError(Exception):
    """An item could not be chunked or embedded."""


class StageProcessor(ABC):
    """Base class for pipeline stage processors.

    process() receives the item, transforms it and returns it. It must not
    keep a reference to the item after returning, and raises on failure.
    """

    #: Which pipeline stage this processor handles
    stage: PipelineStage
    #: Default max concurrent items for this stage
    concurrency: int
    #: Human-readable name for logging
    name: str
    #: queue_status while an item is being processed
    active_status: QueueStatus = QueueStatus.PROCESSING
    #: queue_status after an item succeeded
    done_status: QueueStatus = QueueStatus.PROCESSED

    @abstractmethod
    async def process(self, item: QueueItem, cancel_token: CancelToken | None = None) -> QueueItem:
        ...

    async def setup(self) -> None:
        """Called once before a batch is processed."""
        logger.debug(f"{self.name} setup complete")

    async def teardown(self) -> None:
        """Called once after a batch is processed."""
        logger.debug(f"{self.name} teardown complete")

    def should_process(self, item: QueueItem) -> bool:
        """Whether the item is dispatched at all; others are marked skipped."""
        return True


class FetchStage(StageProcessor):
    """Downloads the raw body of each item's URL."""

    stage = PipelineStage.FETCH
    concurrency = 10  # Network-bound, many requests in flight
    name = "FetchStage"
    active_status = QueueStatus.PROCESSING
    done_status = QueueStatus.PROCESSED

    def __init__(self, fetcher: ContentFetcher | None = None) -> None:
        self._fetcher = fetcher or ContentFetcher()

    @classmethod
    def from_settings(cls, settings: Settings) -> FetchStage:
        return cls(ContentFetcher.from_settings(settings))

    def should_process(self, item: QueueItem) -> bool:
        return bool(item.url)

    async def process(self, item: QueueItem, cancel_token: CancelToken | None = None) -> QueueItem:
        logger.debug(f"Downloading {item.url}")
        item.raw_content = await self._fetcher.fetch(item.url, cancel_token)
        item.touch()
        return item

    async def teardown(self) -> None:
        await self._fetcher.close()
        await super().teardown()


class ChunkEmbedStage(StageProcessor):
    """Turns fetched HTML into embedded chunks."""

    stage = PipelineStage.CHUNK_EMBED
    concurrency = 5  # Bound by the embedding model
    name = "ChunkEmbedStage"
    active_status = QueueStatus.CHUNKING
    done_status = QueueStatus.CHUNKED

    #: Target chunk size in characters
    CHUNK_SIZE = 1000
    #: Overlap between chunks for context preservation
    CHUNK_OVERLAP = 150

    def __init__(self, embedder: Embedder) -> None:
        self._embedder = embedder

    @classmethod
    def from_settings(cls, settings: Settings) -> ChunkEmbedStage:
        return cls(EmbeddingClient.from_settings(settings))

    async def process(self, item: QueueItem, cancel_token: CancelToken | None = None) -> QueueItem:
        if item.raw_content is None:
            raise ChunkError("No content to chunk")

        logger.debug(f"Chunking {item.url}")
        text = extract_text_from_html(item.raw_content)
        if len(text) < MIN_TEXT_LENGTH:
            raise ChunkError(f"Text too short: {len(text)} chars (min: {MIN_TEXT_LENGTH})")

        raw_chunks = split_text_semantic(text, self.CHUNK_SIZE, self.CHUNK_OVERLAP)
        texts = [c.text for c in raw_chunks]

        try:
            if cancel_token is not None:
                embeddings = await cancel_token.guard(self._embedder.embed(texts))
            else:
                embeddings = await self._embedder.embed(texts)
        except OperationCancelled as e:
            raise ChunkError("Embedding cancelled") from e
        except EmbeddingError as e:
            raise ChunkError(f"Embedding failed: {e}") from e

        if len(embeddings) != len(raw_chunks):
            raise ChunkError(
                f"Embedding count mismatch: {len(embeddings)} embeddings for {len(raw_chunks)} chunks"
            )

        # Embeddings map back to chunks strictly by index
        item.chunks = [
            Chunk(text=chunk.text, position=index, embedding=list(embeddings[index]))
            for index, chunk in enumerate(raw_chunks)
        ]
        item.touch()

        logger.debug(f"Chunked {item.url}: {len(raw_chunks)} chunks from {len(text)} chars")
        return item
