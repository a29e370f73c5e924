"""Tests for embedding providers and the batching client."""

import base64
import os
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from bookmark_index.core.embedding_providers import (
    EmbeddingError,
    EmbeddingProvider,
    OllamaProvider,
    OpenAIProvider,
    deserialize_f32,
    get_provider,
    serialize_f32,
)
from bookmark_index.core.embeddings import EmbeddingClient


class FakeProvider(EmbeddingProvider):
    """Returns [index, len(text)] per text and records batch sizes."""

    def __init__(self, drop_last: bool = False):
        self.batches: list[int] = []
        self.drop_last = drop_last
        self._counter = 0

    @property
    def name(self) -> str:
        return "Fake"

    @property
    def model_id(self) -> str:
        return "fake"

    @property
    def dimensions(self) -> int:
        return 2

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(len(texts))
        vectors = []
        for text in texts:
            vectors.append([float(self._counter), float(len(text))])
            self._counter += 1
        return vectors[:-1] if self.drop_last else vectors


def test_serialize_f32():
    """Test float serialization for sqlite-vec."""
    vec = [1.0, 2.0, 3.0]
    result = serialize_f32(vec)
    assert isinstance(result, bytes)
    assert len(result) == 12  # 3 floats * 4 bytes
    assert deserialize_f32(result) == vec


class TestEmbeddingClient:
    @pytest.mark.asyncio
    async def test_batches_preserve_order(self):
        provider = FakeProvider()
        client = EmbeddingClient(provider=provider, batch_size=50)
        texts = [f"text {i}" for i in range(120)]

        vectors = await client.embed(texts)

        assert provider.batches == [50, 50, 20]
        assert [v[0] for v in vectors] == [float(i) for i in range(120)]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        provider = FakeProvider()
        client = EmbeddingClient(provider=provider)
        assert await client.embed([]) == []
        assert provider.batches == []

    @pytest.mark.asyncio
    async def test_batch_count_mismatch_raises(self):
        client = EmbeddingClient(provider=FakeProvider(drop_last=True))
        with pytest.raises(EmbeddingError, match="1 embeddings for a batch of 2"):
            await client.embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_embed_query(self):
        client = EmbeddingClient(provider=FakeProvider())
        assert await client.embed_query("hello") == [0.0, 5.0]

    @pytest.mark.asyncio
    async def test_unknown_provider_surfaces_on_embed(self):
        client = EmbeddingClient(provider_name="nope")
        with pytest.raises(EmbeddingError, match="Unknown provider"):
            await client.embed(["x"])

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            EmbeddingClient(provider=FakeProvider(), batch_size=0)


class TestGetProvider:
    def test_default_is_ollama(self):
        provider = get_provider()
        assert isinstance(provider, OllamaProvider)
        assert provider.model_id == "nomic-embed-text"
        assert provider.dimensions == 768

    def test_openai(self):
        provider = get_provider("OpenAI")
        assert isinstance(provider, OpenAIProvider)
        assert provider.dimensions == 1536

    def test_unknown_model(self):
        with pytest.raises(ValueError, match="Unknown Ollama model"):
            get_provider("ollama", "no-such-model")

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            get_provider("cohere")


def _response(payload: dict, status: int = 200, url: str = OpenAIProvider.API_URL) -> httpx.Response:
    return httpx.Response(status, json=payload, request=httpx.Request("POST", url))


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": ""}, clear=False):
            provider = OpenAIProvider()
            with pytest.raises(EmbeddingError, match="OPENAI_API_KEY"):
                await provider.embed(["test text"])

    @pytest.mark.asyncio
    async def test_base64_response_ordered_by_index(self):
        first = [0.5, 0.25]
        second = [1.0, -1.0]
        payload = {
            "data": [
                {"embedding": base64.b64encode(serialize_f32(second)).decode(), "index": 1},
                {"embedding": base64.b64encode(serialize_f32(first)).decode(), "index": 0},
            ]
        }

        async def mock_post(*args, **kwargs):
            return _response(payload)

        provider = OpenAIProvider(api_key="test-key")
        with patch("httpx.AsyncClient.post", side_effect=mock_post):
            result = await provider.embed(["a", "b"])

        assert result == [first, second]

    @pytest.mark.asyncio
    async def test_missing_vector_raises(self):
        payload = {"data": [{"embedding": [0.1, 0.2], "index": 0}]}

        async def mock_post(*args, **kwargs):
            return _response(payload)

        provider = OpenAIProvider(api_key="test-key")
        with patch("httpx.AsyncClient.post", side_effect=mock_post):
            with pytest.raises(EmbeddingError, match="1 embeddings for 2 inputs"):
                await provider.embed(["a", "b"], use_base64=False)

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        request = httpx.Request("POST", OpenAIProvider.API_URL)
        response = httpx.Response(401, request=request, text="bad key")

        async def mock_post(*args, **kwargs):
            return response

        provider = OpenAIProvider(api_key="test-key")
        with patch("httpx.AsyncClient.post", side_effect=mock_post):
            with pytest.raises(EmbeddingError, match="rejected") as exc_info:
                await provider.embed(["a"])
        assert exc_info.value.retriable is False

    @pytest.mark.asyncio
    async def test_rate_limit_retries_then_succeeds(self):
        responses = [
            _response({"error": {"message": "Rate limit reached"}}, status=429),
            _response({"data": [{"embedding": [0.1], "index": 0}]}),
        ]

        async def mock_post(*args, **kwargs):
            return responses.pop(0)

        provider = OpenAIProvider(api_key="test-key")
        sleep = AsyncMock()
        with patch("httpx.AsyncClient.post", side_effect=mock_post), patch("asyncio.sleep", sleep):
            result = await provider.embed(["a"], use_base64=False)

        assert result == [[0.1]]
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_quota_exhausted_is_not_retried(self):
        calls = []

        async def mock_post(*args, **kwargs):
            calls.append(1)
            return _response({"error": {"message": "You exceeded your current quota"}}, status=429)

        provider = OpenAIProvider(api_key="test-key")
        with patch("httpx.AsyncClient.post", side_effect=mock_post):
            with pytest.raises(EmbeddingError, match="quota exhausted"):
                await provider.embed(["a"])
        assert len(calls) == 1


class TestOllamaProvider:
    @pytest.mark.asyncio
    async def test_one_request_per_text(self):
        calls = []

        async def mock_post(*args, **kwargs):
            calls.append(kwargs["json"]["prompt"])
            return _response({"embedding": [float(len(calls))] * 3})

        provider = OllamaProvider(base_url="http://ollama:11434/")
        with patch("httpx.AsyncClient.post", side_effect=mock_post):
            result = await provider.embed(["x", "y"])

        assert calls == ["x", "y"]
        assert result == [[1.0, 1.0, 1.0], [2.0, 2.0, 2.0]]

    @pytest.mark.asyncio
    async def test_missing_model(self):
        async def mock_post(*args, **kwargs):
            return _response({"error": "model not found"}, status=404, url="http://localhost:11434/api/embeddings")

        provider = OllamaProvider()
        with patch("httpx.AsyncClient.post", side_effect=mock_post):
            with pytest.raises(EmbeddingError, match="ollama pull nomic-embed-text"):
                await provider.embed(["x"])

    @pytest.mark.asyncio
    async def test_unreachable_is_retriable(self):
        async def mock_post(*args, **kwargs):
            raise httpx.ConnectError("refused")

        provider = OllamaProvider()
        with patch("httpx.AsyncClient.post", side_effect=mock_post):
            with pytest.raises(EmbeddingError) as exc_info:
                await provider.embed(["x"])
        assert exc_info.value.retriable is True
