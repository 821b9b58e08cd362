from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str
    embedding_provider: str
    embedding_model: str | None
    scraper_rate_limit_rps: float
    scrape_timeout: float
    scrape_max_retries: int
    scrape_retry_delay: float
    chunk_max_tokens: int

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "./_local/data/bookmarks.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "openai").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "").strip() or None,
            scraper_rate_limit_rps=_f("SCRAPER_RATE_LIMIT_RPS", "2.0"),
            scrape_timeout=_f("SCRAPE_TIMEOUT", "30"),
            scrape_max_retries=_i("SCRAPE_MAX_RETRIES", "3"),
            scrape_retry_delay=_f("SCRAPE_RETRY_DELAY", "2.0"),
            chunk_max_tokens=_i("CHUNK_MAX_TOKENS", "6000"),
        )
