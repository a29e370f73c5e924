"""Keyword retrieval over indexed slices.

Scores each slice by how often the query words occur in its title and text,
with a flat bonus per word that appears in the title.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from bookmark_index.core.storage import PersistedSlice, Storage

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 3
MAX_TOP_K = 20
MIN_WORD_LENGTH = 2
TITLE_BONUS = 2


@dataclass
class ScoredSlice:
    slice: PersistedSlice
    score: float


@dataclass
class SearchResult:
    """One retrieved passage."""

    title: str
    url: str
    text: str
    score: float | None = None

    @classmethod
    def from_scored(cls, scored: ScoredSlice) -> SearchResult:
        s = scored.slice
        return cls(title=s.title, url=s.url, text=s.text, score=scored.score)

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "url": self.url, "text": self.text, "score": self.score}


@dataclass
class SearchResponse:
    """Results of a retrieval call; `error` is set instead of raising."""

    results: list[SearchResult] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"results": [r.to_dict() for r in self.results]}
        if self.error:
            data["error"] = self.error
        return data


def clamp_top_k(top_k: int | None, default: int = DEFAULT_TOP_K) -> int:
    """Clamp top_k into [1, MAX_TOP_K], using default when None."""
    if top_k is None:
        top_k = default
    return min(max(1, top_k), MAX_TOP_K)


def tokenize_query(query: str) -> list[str]:
    return query.lower().split()


def score_slice(slice: PersistedSlice, query_words: list[str]) -> float:
    """Score a slice by keyword overlap.

    Each word counts its case-insensitive substring occurrences in title and
    text ("react" also matches inside "preact"), plus TITLE_BONUS if it occurs
    in the title. Words shorter than MIN_WORD_LENGTH are ignored.
    """
    title = (slice.title or "").lower()
    haystack = f"{title} {(slice.text or '').lower()}"
    score = 0
    for word in query_words:
        word = word.lower()
        if len(word) < MIN_WORD_LENGTH:
            continue
        # str.count is literal, so regex metacharacters need no escaping
        score += haystack.count(word)
        if word in title:
            score += TITLE_BONUS
    return float(score)


def rank_slices(slices: list[PersistedSlice], query_words: list[str], top_k: int) -> list[ScoredSlice]:
    """Best-scoring slices first; ties keep input order. Zero scores are dropped."""
    scored = [ScoredSlice(slice=s, score=score_slice(s, query_words)) for s in slices]
    scored.sort(key=lambda s: s.score, reverse=True)
    if not scored or scored[0].score <= 0:
        return []
    return [s for s in scored if s.score > 0][:top_k]


def search_context(
    storage: Storage,
    query: str | None = None,
    top_k: int | None = None,
    url: str | None = None,
) -> SearchResponse:
    """Keyword search over stored slices.

    With `url`, only that page's slices are considered; if there is no query
    the page's first `top_k` slices are returned in position order.
    """
    query = (query or "").strip()
    k = clamp_top_k(top_k)

    try:
        if url:
            slices = storage.list_slices(url=url)
            if not query:
                ordered = sorted(slices, key=lambda s: s.position)[:k]
                return SearchResponse(results=[SearchResult(title=s.title, url=s.url, text=s.text) for s in ordered])
        else:
            slices = storage.list_slices()

        ranked = rank_slices(slices, tokenize_query(query), k)
    except Exception as e:
        logger.exception("Keyword search failed")
        return SearchResponse(error=str(e))

    logger.info(f"Keyword search for {query!r}: {len(ranked)} results from {len(slices)} slices")
    return SearchResponse(results=[SearchResult.from_scored(s) for s in ranked])
