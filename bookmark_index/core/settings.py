from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    embedding_provider: str
    embedding_model: str | None
    embed_batch_size: int
    fetch_concurrency: int
    chunk_concurrency: int
    fetch_timeout: float
    retry_cooldown_hours: int

    @property
    def retry_cooldown(self) -> timedelta:
        return timedelta(hours=self.retry_cooldown_hours)

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "_local/data/bookmarks.db").strip(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "ollama").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "").strip() or None,
            embed_batch_size=_i("EMBED_BATCH_SIZE", "50"),
            fetch_concurrency=_i("FETCH_CONCURRENCY", "10"),
            chunk_concurrency=_i("CHUNK_CONCURRENCY", "5"),
            fetch_timeout=_f("FETCH_TIMEOUT", "15"),
            retry_cooldown_hours=_i("RETRY_COOLDOWN_HOURS", "24"),
        )
