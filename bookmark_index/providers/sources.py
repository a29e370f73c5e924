"""Bookmark source: reads browser bookmarks and picks what still needs indexing."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

from bookmark_index.core.queue_item import PageSeed
from bookmark_index.core.settings import Settings
from bookmark_index.core.storage import Storage

logger = logging.getLogger(__name__)

EXCLUDED_DOMAINS = (
    # Social media
    "facebook.com",
    "snapchat.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "tiktok.com",
    "linkedin.com",
    # Search & portals
    "google.com",
    "bing.com",
    "imgur.com",
    "yahoo.com",
    "duckduckgo.com",
    # Video/streaming
    "youtube.com",
    "netflix.com",
    "twitch.tv",
    "spotify.com",
    "9gag.com",
    # Shopping
    "amazon.com",
    "ebay.com",
    "aliexpress.com",
    # Auth/login pages
    "accounts.google.com",
    "login.",
    "auth.",
    "signin.",
    # Browser internal
    "chrome://",
    "chrome-extension://",
    "about:",
    "edge://",
    "moz-extension://",
    # Local
    "localhost",
    "127.0.0.1",
    "::1",
)

# Not HTML pages
EXCLUDED_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".bmp",
    ".mp4", ".webm", ".avi", ".mov", ".mp3", ".wav", ".ogg",
    ".zip", ".rar", ".7z", ".tar", ".gz", ".exe", ".dmg", ".apk",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
)


def is_excluded(url: str) -> bool:
    """Whether a URL should never be indexed.

    Domains match as plain substrings of the lowercased URL. Extensions
    are checked on the part before any query string.
    """
    lower_url = url.lower()
    if any(domain in lower_url for domain in EXCLUDED_DOMAINS):
        return True
    path = lower_url.split("?", 1)[0]
    return path.endswith(EXCLUDED_EXTENSIONS)


def extract_bookmark_urls(nodes: Iterable[dict[str, Any]]) -> list[PageSeed]:
    """Walk a bookmark tree depth-first and collect indexable bookmarks."""
    results: list[PageSeed] = []
    for node in nodes:
        url = node.get("url")
        if url and not is_excluded(url):
            results.append(PageSeed(url=url, title=node.get("name") or node.get("title") or url, id=node.get("id")))
        children = node.get("children")
        if children:
            results.extend(extract_bookmark_urls(children))
    return results


def read_bookmarks_file(path: str | Path) -> list[PageSeed]:
    """Read a Chrome/Chromium `Bookmarks` JSON file into seeds.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a bookmarks export.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict) or "roots" not in data:
        raise ValueError(f"Not a bookmarks file: {path}")

    roots = [root for root in data["roots"].values() if isinstance(root, dict)]
    seeds = extract_bookmark_urls(roots)
    logger.info(f"Read {len(seeds)} bookmarks from {path}")
    return seeds


def select_pending(
    seeds: Iterable[PageSeed],
    storage: Storage,
    now: datetime | None = None,
    cooldown: timedelta | None = None,
    settings: Settings | None = None,
) -> list[PageSeed]:
    """Filter seeds down to those that still need indexing.

    Drops excluded and duplicate URLs, pages already processed, and pages
    whose last attempt failed less than `cooldown` ago. The cooldown
    defaults to the configured RETRY_COOLDOWN_HOURS.
    """
    now = now or datetime.now(timezone.utc)
    if cooldown is None:
        cooldown = (settings or Settings.from_env()).retry_cooldown
    seen: set[str] = set()
    pending: list[PageSeed] = []
    skipped_recent = 0

    for seed in seeds:
        if not seed.url or seed.url in seen or is_excluded(seed.url):
            continue
        seen.add(seed.url)

        existing = storage.get_persisted_item(seed.url)
        if existing is not None:
            if existing.processed:
                continue
            if existing.error and existing.indexed_at and now - existing.indexed_at < cooldown:
                skipped_recent += 1
                continue
        pending.append(seed)

    if skipped_recent:
        logger.info(f"Skipping {skipped_recent} pages that failed within the last {cooldown}")
    return pending
