"""Hybrid retrieval: keyword and vector results, concatenated and deduplicated.

There is no score fusion. Keyword results come first, then vector results,
and only the first result per identity key (URL or title) is kept.
"""

from __future__ import annotations

import logging

from bookmark_index.core.embeddings import Embedder
from bookmark_index.core.search import SearchResponse, SearchResult, search_context
from bookmark_index.core.storage import Storage
from bookmark_index.core.vector_search import search_vector_context

logger = logging.getLogger(__name__)

DEDUP_KEYS = ("url", "title")


def merge_results(*result_lists: list[SearchResult], key: str = "url") -> list[SearchResult]:
    """Concatenate result lists, keeping the first result for each key value."""
    if key not in DEDUP_KEYS:
        raise ValueError(f"Unknown dedup key: {key}. Available: {', '.join(DEDUP_KEYS)}")

    seen: set[str] = set()
    merged: list[SearchResult] = []
    for results in result_lists:
        for result in results:
            identity = getattr(result, key)
            if identity in seen:
                continue
            seen.add(identity)
            merged.append(result)
    return merged


async def hybrid_search(
    storage: Storage,
    embedder: Embedder,
    query: str | None,
    top_k: int | None = None,
    url: str | None = None,
    key: str = "url",
) -> SearchResponse:
    """Run keyword and vector retrieval for one query and union the results.

    If the vector side fails, keyword results are returned on their own. An
    error is reported only when neither side produced anything.
    """
    if key not in DEDUP_KEYS:
        raise ValueError(f"Unknown dedup key: {key}. Available: {', '.join(DEDUP_KEYS)}")

    keyword = search_context(storage, query=query, top_k=top_k, url=url)
    vector = await search_vector_context(storage, embedder, query, top_k=top_k, url=url)

    if vector.error:
        logger.warning(f"Vector search unavailable, using keyword results only: {vector.error}")

    merged = merge_results(keyword.results, vector.results, key=key)
    if not merged:
        errors = [e for e in (keyword.error, vector.error) if e]
        return SearchResponse(error="; ".join(errors) if errors else None)

    logger.info(
        f"Hybrid search for {query!r}: {len(merged)} results "
        f"({len(keyword.results)} keyword, {len(vector.results)} vector)"
    )
    return SearchResponse(results=merged)
