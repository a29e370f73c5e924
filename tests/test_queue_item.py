"""Tests for queue items, settings and the cancel token."""

import asyncio
from datetime import timedelta

import pytest

from bookmark_index.core.cancellation import CancelToken, OperationCancelled
from bookmark_index.core.chunking import Chunk
from bookmark_index.core.queue_item import ItemStatus, PageSeed, PipelineStage, QueueItem, QueueStatus
from bookmark_index.core.settings import Settings


class TestQueueItem:
    def test_from_seed_defaults(self):
        item = QueueItem.from_seed(PageSeed(url="https://example.com"))
        assert item.id == "https://example.com"
        assert item.title == "https://example.com"
        assert item.stage == PipelineStage.FETCH
        assert item.status == ItemStatus.PENDING
        assert item.raw_content is None
        assert item.chunks is None

    def test_from_seed_keeps_id_and_title(self):
        item = QueueItem.from_seed(PageSeed(url="https://example.com", title="Example", id="42"))
        assert (item.id, item.title) == ("42", "Example")

    def test_chunks_replace_raw_content(self):
        item = QueueItem.from_seed(PageSeed(url="https://example.com"))
        item.raw_content = "<p>html</p>"
        item.chunks = [Chunk(text="html", position=0)]
        assert item.raw_content is None
        assert item.chunks == [Chunk(text="html", position=0)]

    def test_clearing_other_kind_keeps_payload(self):
        item = QueueItem.from_seed(PageSeed(url="https://example.com"))
        item.raw_content = "<p>html</p>"
        item.chunks = None
        assert item.raw_content == "<p>html</p>"
        item.raw_content = None
        assert item.raw_content is None

    def test_enter_stage_resets_status(self):
        item = QueueItem.from_seed(PageSeed(url="https://example.com"))
        item.status = ItemStatus.COMPLETED
        item.queue_status = QueueStatus.PROCESSED
        item.enter_stage(PipelineStage.CHUNK_EMBED)
        assert item.stage == PipelineStage.CHUNK_EMBED
        assert item.status == ItemStatus.PENDING
        assert item.queue_status == QueueStatus.PENDING

    def test_to_dict(self):
        item = QueueItem.from_seed(PageSeed(url="https://example.com", title="Example"))
        item.chunks = [Chunk(text="a", position=0), Chunk(text="b", position=1)]
        data = item.to_dict()
        assert data["stage"] == "fetch"
        assert data["chunk_count"] == 2
        assert data["has_raw_content"] is False


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("DB_PATH", "EMBEDDING_PROVIDER", "EMBEDDING_MODEL", "FETCH_TIMEOUT", "EMBED_BATCH_SIZE"):
            monkeypatch.delenv(name, raising=False)
        s = Settings.from_env()
        assert s.db_path == "_local/data/bookmarks.db"
        assert s.embedding_provider == "ollama"
        assert s.embedding_model is None
        assert s.fetch_timeout == 15.0
        assert s.embed_batch_size == 50

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("EMBEDDING_PROVIDER", "openai")
        monkeypatch.setenv("EMBEDDING_MODEL", "text-embedding-3-large")
        monkeypatch.setenv("RETRY_COOLDOWN_HOURS", "6")
        s = Settings.from_env()
        assert s.embedding_provider == "openai"
        assert s.embedding_model == "text-embedding-3-large"
        assert s.retry_cooldown_hours == 6
        assert s.retry_cooldown == timedelta(hours=6)


class TestCancelToken:
    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        async def work():
            return 7

        assert await CancelToken().guard(work()) == 7

    @pytest.mark.asyncio
    async def test_guard_raises_when_cancelled_mid_flight(self):
        token = CancelToken()
        finished = []

        async def slow():
            await asyncio.sleep(5)
            finished.append(True)

        task = asyncio.create_task(token.guard(slow()))
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(task, timeout=1)
        assert finished == []

    @pytest.mark.asyncio
    async def test_guard_already_cancelled(self):
        token = CancelToken()
        token.cancel()

        async def work():
            return 1

        with pytest.raises(OperationCancelled):
            await token.guard(work())

    def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(OperationCancelled):
            token.raise_if_cancelled()
