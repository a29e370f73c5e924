"""Embedding backends: the OpenAI API and a local Ollama server."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Backoff for OpenAI rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds


def serialize_f32(vector: list[float]) -> bytes:
    """Pack floats as little-endian float32, the blob format sqlite-vec reads."""
    return struct.pack(f"<{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))


@dataclass(frozen=True)
class ModelInfo:
    model_id: str
    dimensions: int
    max_tokens: int
    description: str


MODEL_CATALOG: dict[str, dict[str, ModelInfo]] = {
    "openai": {
        m.model_id: m
        for m in (
            ModelInfo("text-embedding-3-small", 1536, 8191, "Hosted, good quality per cost."),
            ModelInfo("text-embedding-3-large", 3072, 8191, "Hosted, highest quality, large vectors."),
        )
    },
    "ollama": {
        m.model_id: m
        for m in (
            ModelInfo("nomic-embed-text", 768, 8192, "Local, small download."),
            ModelInfo("snowflake-arctic-embed:m", 768, 512, "Local, tuned for retrieval."),
            ModelInfo("mxbai-embed-large", 1024, 512, "Local, larger model."),
        )
    },
}

DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "ollama": "nomic-embed-text",
}


class EmbeddingError(Exception):
    """An embedding backend failed or returned unusable output."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class EmbeddingProvider(ABC):
    """A backend turning texts into vectors, one per text, in input order."""

    #: Key into MODEL_CATALOG
    catalog_key: str = ""
    #: Human-readable provider name
    name: str = ""

    def __init__(self, model: str) -> None:
        catalog = MODEL_CATALOG.get(self.catalog_key, {})
        if model not in catalog:
            raise ValueError(f"Unknown {self.name} model: {model}. Available: {', '.join(catalog)}")
        self.model_info = catalog[model]

    @property
    def model_id(self) -> str:
        return self.model_info.model_id

    @property
    def dimensions(self) -> int:
        return self.model_info.dimensions

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts.

        Raises:
            EmbeddingError: If the backend fails.
        """
        ...

    def _error(self, message: str, retriable: bool = False) -> EmbeddingError:
        return EmbeddingError(message, provider=self.name, retriable=retriable)


class OpenAIProvider(EmbeddingProvider):
    """Batch embeddings from the OpenAI API, one request per call."""

    catalog_key = "openai"
    name = "OpenAI"
    API_URL = "https://api.openai.com/v1/embeddings"
    # Roughly 5000 tokens, inside the 8191 token input limit
    MAX_INPUT_CHARS = 20000

    def __init__(
        self,
        model: str = DEFAULT_MODELS["openai"],
        api_key: str | None = None,
        timeout: float = 120.0,
    ) -> None:
        super().__init__(model)
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()
        self._timeout = timeout

    async def embed(self, texts: list[str], use_base64: bool = True) -> list[list[float]]:
        """Embed texts in a single request, retrying on rate limits.

        base64 responses are about a quarter of the size of JSON floats.
        """
        if not texts:
            return []
        if not self._api_key:
            raise self._error("OPENAI_API_KEY is not set.")

        payload: dict[str, Any] = {
            "model": self.model_id,
            "input": [t[: self.MAX_INPUT_CHARS] for t in texts],
        }
        if use_base64:
            payload["encoding_format"] = "base64"
        headers = {"Authorization": f"Bearer {self._api_key}"}

        delay = INITIAL_DELAY
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(self.API_URL, headers=headers, json=payload)
                except httpx.TransportError as e:
                    raise self._error(f"OpenAI API unreachable: {e}", retriable=True) from e

                if response.status_code == 429 and "quota" not in response.text.lower():
                    logger.warning(f"OpenAI rate limit, attempt {attempt}/{MAX_RETRIES}, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, MAX_DELAY)
                    continue

                self._check_status(response)
                return self._parse(response.json(), len(texts))

        raise self._error(f"Rate limit persisted after {MAX_RETRIES} attempts.", retriable=True)

    def _check_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        status = response.status_code
        if status == 429:
            # Quota exhaustion looks like a rate limit but never clears
            raise self._error("OpenAI quota exhausted.")
        if status == 401:
            raise self._error("OpenAI API key rejected.")
        raise self._error(f"OpenAI API error: {status} - {response.text}", retriable=status >= 500)

    def _parse(self, data: dict[str, Any], expected: int) -> list[list[float]]:
        vectors: list[list[float] | None] = [None] * expected
        for entry in data.get("data", []):
            embedding = entry["embedding"]
            if isinstance(embedding, str):
                embedding = deserialize_f32(base64.b64decode(embedding))
            index = entry["index"]
            if 0 <= index < expected:
                vectors[index] = embedding

        missing = sum(1 for v in vectors if v is None)
        if missing:
            raise self._error(f"OpenAI returned {expected - missing} embeddings for {expected} inputs")
        return vectors  # type: ignore[return-value]


class OllamaProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server, one request per text."""

    catalog_key = "ollama"
    name = "Ollama"

    def __init__(
        self,
        model: str = DEFAULT_MODELS["ollama"],
        base_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(model)
        self._base_url = (base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")).rstrip("/")
        self._timeout = timeout

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return [await self._embed_one(client, text) for text in texts]

    async def _embed_one(self, client: httpx.AsyncClient, text: str) -> list[float]:
        try:
            response = await client.post(
                f"{self._base_url}/api/embeddings",
                json={"model": self.model_id, "prompt": text},
            )
        except httpx.ConnectError as e:
            raise self._error(f"Ollama not reachable at {self._base_url}. Is it running?", retriable=True) from e
        except httpx.TransportError as e:
            raise self._error(f"Ollama request failed: {e}", retriable=True) from e

        if response.status_code == 404:
            raise self._error(f"Model '{self.model_id}' not found. Run 'ollama pull {self.model_id}'.")
        if not response.is_success:
            raise self._error(f"Ollama error: {response.status_code} - {response.text}")
        return response.json()["embedding"]


PROVIDERS: dict[str, type[EmbeddingProvider]] = {
    "openai": OpenAIProvider,
    "ollama": OllamaProvider,
}


def get_provider(provider_name: str = "ollama", model: str | None = None) -> EmbeddingProvider:
    """Create a provider by name, using its default model when none is given.

    Raises:
        ValueError: If the provider or model is unknown.
    """
    key = provider_name.lower()
    provider_cls = PROVIDERS.get(key)
    if provider_cls is None:
        raise ValueError(f"Unknown provider: {provider_name}. Available: {', '.join(PROVIDERS)}")
    return provider_cls(model or DEFAULT_MODELS[key])
