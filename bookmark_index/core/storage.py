from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import sqlite_vec

from bookmark_index.core.chunking import Chunk
from bookmark_index.core.embedding_providers import deserialize_f32, serialize_f32
from bookmark_index.core.settings import Settings

# Upper bound on slices returned by an unfiltered listing
MAX_LISTED_SLICES = 5000


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS pages (
  url TEXT PRIMARY KEY,
  title TEXT,
  processed INTEGER NOT NULL DEFAULT 0,
  error TEXT,
  indexed_at TEXT,
  retry_count INTEGER NOT NULL DEFAULT 0,
  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS slices (
  id TEXT PRIMARY KEY,
  url TEXT NOT NULL,
  title TEXT,
  text TEXT NOT NULL,
  position INTEGER NOT NULL,
  embedding BLOB,
  created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_slices_url ON slices(url, position);
CREATE INDEX IF NOT EXISTS idx_pages_processed ON pages(processed);
"""


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # SQLite's datetime('now') has no offset; it is UTC
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class PageRecord:
    """A source page as the store remembers it between runs."""

    url: str
    title: str = ""
    processed: bool = False
    error: str | None = None
    indexed_at: datetime | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "processed": self.processed,
            "error": self.error,
            "indexed_at": _to_iso(self.indexed_at),
            "retry_count": self.retry_count,
            "created_at": _to_iso(self.created_at),
            "updated_at": _to_iso(self.updated_at),
        }


@dataclass
class PersistedSlice:
    """The durable form of a Chunk, queried by retrieval."""

    id: str
    url: str
    title: str
    text: str
    position: int
    embedding: list[float] | None = None

    @classmethod
    def from_chunk(cls, url: str, title: str, chunk: Chunk) -> PersistedSlice:
        return cls(
            id=f"{url}#{chunk.position}",
            url=url,
            title=title,
            text=chunk.text,
            position=chunk.position,
            embedding=chunk.embedding,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "text": self.text,
            "position": self.position,
            "dimensions": len(self.embedding) if self.embedding else None,
        }


class Storage(Protocol):
    """What the pipeline and retrieval need from a store."""

    def get_persisted_item(self, url: str) -> PageRecord | None: ...

    def save_persisted_item(self, item: PageRecord) -> None: ...

    def save_slice(self, slice: PersistedSlice) -> None: ...

    def list_slices(self, url: str | None = None, dimensions: int | None = None) -> list[PersistedSlice]: ...


def _page_from_row(row: sqlite3.Row) -> PageRecord:
    return PageRecord(
        url=row["url"],
        title=row["title"] or "",
        processed=bool(row["processed"]),
        error=row["error"],
        indexed_at=_from_iso(row["indexed_at"]),
        retry_count=row["retry_count"] or 0,
        created_at=_from_iso(row["created_at"]),
        updated_at=_from_iso(row["updated_at"]),
    )


def _slice_from_row(row: sqlite3.Row) -> PersistedSlice:
    blob = row["embedding"]
    return PersistedSlice(
        id=row["id"],
        url=row["url"],
        title=row["title"] or "",
        text=row["text"],
        position=row["position"],
        embedding=deserialize_f32(blob) if blob else None,
    )


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def get_persisted_item(self, url: str) -> PageRecord | None:
        row = self.conn.execute("SELECT * FROM pages WHERE url = ?", (url,)).fetchone()
        return _page_from_row(row) if row else None

    def save_persisted_item(self, item: PageRecord) -> None:
        """Insert or update a page by URL."""
        self.conn.execute(
            """
            INSERT INTO pages (url, title, processed, error, indexed_at, retry_count)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(url) DO UPDATE SET
              title = excluded.title,
              processed = excluded.processed,
              error = excluded.error,
              indexed_at = excluded.indexed_at,
              retry_count = excluded.retry_count,
              updated_at = datetime('now')
            """,
            (
                item.url,
                item.title,
                1 if item.processed else 0,
                item.error,
                _to_iso(item.indexed_at),
                item.retry_count,
            ),
        )
        self.conn.commit()

    def save_slice(self, slice: PersistedSlice) -> None:
        """Insert or replace a slice by id."""
        # Empty vectors are stored as NULL so they read back as absent
        blob = serialize_f32(slice.embedding) if slice.embedding else None
        self.conn.execute(
            """
            INSERT OR REPLACE INTO slices (id, url, title, text, position, embedding)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (slice.id, slice.url, slice.title, slice.text, slice.position, blob),
        )
        self.conn.commit()

    def list_slices(self, url: str | None = None, dimensions: int | None = None) -> list[PersistedSlice]:
        """List slices, optionally for one URL and/or one embedding size.

        A URL filter returns that page's slices in position order. Without
        one, slices come back in insertion order, capped at MAX_LISTED_SLICES.
        With `dimensions`, only slices whose embedding has exactly that many
        components are returned.
        """
        where: list[str] = []
        params: list[Any] = []
        if url is not None:
            where.append("url = ?")
            params.append(url)
        if dimensions is not None:
            where.append("(CASE WHEN embedding IS NULL THEN NULL ELSE vec_length(embedding) END) = ?")
            params.append(dimensions)

        sql = "SELECT id, url, title, text, position, embedding FROM slices"
        if where:
            sql += " WHERE " + " AND ".join(where)
        if url is not None:
            sql += " ORDER BY position"
        else:
            sql += " ORDER BY rowid LIMIT ?"
            params.append(MAX_LISTED_SLICES)

        rows = self.conn.execute(sql, params).fetchall()
        return [_slice_from_row(r) for r in rows]

    def get_indexing_stats(self) -> dict[str, int]:
        """Page counts: total, processed and failed (error set, not processed)."""
        row = self.conn.execute(
            """
            SELECT
              COUNT(*) AS total,
              COALESCE(SUM(CASE WHEN processed = 1 THEN 1 ELSE 0 END), 0) AS processed,
              COALESCE(SUM(CASE WHEN processed = 0 AND error IS NOT NULL THEN 1 ELSE 0 END), 0) AS failed
            FROM pages
            """
        ).fetchone()
        return {"total": row["total"], "processed": row["processed"], "failed": row["failed"]}

    def clear(self) -> None:
        """Delete all pages and slices."""
        self.conn.execute("DELETE FROM slices")
        self.conn.execute("DELETE FROM pages")
        self.conn.commit()


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded."""
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


def open_db(settings: Settings | None = None) -> DB:
    """Open and initialize the database configured by settings."""
    s = settings or Settings.from_env()
    directory = os.path.dirname(s.db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    db = DB(conn=connect(s.db_path))
    db.init()
    return db
