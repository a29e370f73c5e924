"""Vector retrieval: cosine similarity between a query embedding and slices."""

from __future__ import annotations

import logging
import math

from bookmark_index.core.embeddings import Embedder
from bookmark_index.core.search import ScoredSlice, SearchResponse, SearchResult, clamp_top_k
from bookmark_index.core.storage import PersistedSlice, Storage

logger = logging.getLogger(__name__)

DEFAULT_VECTOR_TOP_K = 5


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """dot(a, b) / (|a| * |b|), or 0.0 if either vector has zero magnitude."""
    if len(a) != len(b):
        raise ValueError(f"Dimension mismatch: {len(a)} vs {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    mag_a = math.sqrt(sum(x * x for x in a))
    mag_b = math.sqrt(sum(y * y for y in b))
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (mag_a * mag_b)


def rank_by_similarity(
    query_embedding: list[float],
    slices: list[PersistedSlice],
    top_k: int = DEFAULT_VECTOR_TOP_K,
) -> list[ScoredSlice]:
    """Most similar slices first; ties keep input order.

    Slices without an embedding, or with a different number of dimensions
    than the query, are left out.
    """
    dims = len(query_embedding)
    scored = [
        ScoredSlice(slice=s, score=cosine_similarity(query_embedding, s.embedding))
        for s in slices
        if s.embedding and len(s.embedding) == dims
    ]
    scored.sort(key=lambda s: s.score, reverse=True)
    return scored[:top_k]


def vector_search(
    storage: Storage,
    query_embedding: list[float],
    top_k: int = DEFAULT_VECTOR_TOP_K,
    url: str | None = None,
) -> list[ScoredSlice]:
    """Search stored slices with a precomputed query embedding."""
    if not query_embedding:
        return []
    slices = storage.list_slices(url=url, dimensions=len(query_embedding))
    return rank_by_similarity(query_embedding, slices, top_k)


async def search_vector_context(
    storage: Storage,
    embedder: Embedder,
    query: str | None,
    top_k: int | None = None,
    url: str | None = None,
) -> SearchResponse:
    """Embed the query and return the closest slices.

    Errors from the embedder or the store are reported in the response.
    """
    query = (query or "").strip()
    k = clamp_top_k(top_k)
    if not query:
        return SearchResponse()

    try:
        vectors = await embedder.embed([query])
        if not vectors or not vectors[0]:
            return SearchResponse(error="Failed to get embedding for query")
        ranked = vector_search(storage, vectors[0], top_k=k, url=url)
    except Exception as e:
        logger.exception(f"Vector search failed for {query!r}")
        return SearchResponse(error=str(e))

    logger.info(f"Vector search for {query!r}: {len(ranked)} results")
    return SearchResponse(results=[SearchResult.from_scored(s) for s in ranked])
