"""Embedding client: batches texts through an embedding provider."""

from __future__ import annotations

import logging
from typing import Protocol

from bookmark_index.core.embedding_providers import EmbeddingError, EmbeddingProvider, get_provider
from bookmark_index.core.settings import Settings

logger = logging.getLogger(__name__)

# Maximum number of texts sent to the provider in one call
MAX_BATCH_SIZE = 50


class Embedder(Protocol):
    """Anything that turns texts into vectors, preserving input order."""

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class EmbeddingClient:
    """Order-preserving batching wrapper around an EmbeddingProvider.

    Batches are sent sequentially; callers control concurrency. The provider
    is created on first use, so configuration errors surface from embed().
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        provider_name: str = "ollama",
        model: str | None = None,
        batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._provider = provider
        self._provider_name = provider_name
        self._model = model
        self._batch_size = batch_size

    @classmethod
    def from_settings(cls, settings: Settings) -> EmbeddingClient:
        return cls(
            provider_name=settings.embedding_provider,
            model=settings.embedding_model,
            batch_size=settings.embed_batch_size,
        )

    def _get_provider(self) -> EmbeddingProvider:
        if self._provider is None:
            try:
                self._provider = get_provider(self._provider_name, self._model)
            except ValueError as e:
                raise EmbeddingError(str(e), provider=self._provider_name) from e
            logger.info(f"Embedding provider ready: {self._provider.name} ({self._provider.model_id})")
        return self._provider

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in batches of at most batch_size.

        Returns:
            One vector per input text, in input order.

        Raises:
            EmbeddingError: If the provider fails or returns a batch whose
                size does not match the request.
        """
        if not texts:
            return []

        provider = self._get_provider()
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self._batch_size):
            batch = texts[offset : offset + self._batch_size]
            result = await provider.embed(batch)
            if len(result) != len(batch):
                raise EmbeddingError(
                    f"Provider returned {len(result)} embeddings for a batch of {len(batch)}",
                    provider=provider.name,
                )
            vectors.extend(result)
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query."""
        result = await self.embed([text])
        return result[0]
