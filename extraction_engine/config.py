from __future__ import annotations

import os
from dataclasses import dataclass


def env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def env_int(name: str, default: int) -> int:
    return int(env(name, str(default)) or str(default))


def env_float(name: str, default: float) -> float:
    return float(env(name, str(default)) or str(default))


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    log_level: str = "INFO"

    http_user_agent: str = "extraction-engine/0.1"
    http_max_retries: int = 2
    http_read_timeout_sec: float = 20.0

    # Budget (seconds). Soft stops new page fetches, hard stops draining.
    soft_budget_sec: float = 40.0
    hard_budget_sec: float = 50.0

    batch_size: int = 100
    stale_minutes: int = 30
    sync_frequency_minutes: int = 60
    progress_every_pages: int = 5

    detail_concurrency: int = 10
    detail_chunk_pause_sec: float = 0.5
    detail_active_stale_minutes: int = 60
    detail_settled_stale_minutes: int = 7 * 24 * 60
    detail_max_per_run: int = 500

    # Scheduler cadence (minutes)
    sched_sync_minutes: int = 15


def load_settings(require_database: bool = True) -> Settings:
    db = env("DATABASE_URL") or env("POSTGRES_DSN") or ""
    if require_database and not db:
        raise RuntimeError("Missing DATABASE_URL (or POSTGRES_DSN).")

    return Settings(
        database_url=db,
        log_level=env("LOG_LEVEL", "INFO") or "INFO",
        http_user_agent=env("HTTP_USER_AGENT", "extraction-engine/0.1") or "extraction-engine/0.1",
        http_max_retries=env_int("HTTP_MAX_RETRIES", 2),
        http_read_timeout_sec=env_float("HTTP_READ_TIMEOUT_SEC", 20.0),
        soft_budget_sec=env_float("SYNC_SOFT_BUDGET_SEC", 40.0),
        hard_budget_sec=env_float("SYNC_HARD_BUDGET_SEC", 50.0),
        batch_size=env_int("SYNC_BATCH_SIZE", 100),
        stale_minutes=env_int("SYNC_STALE_MINUTES", 30),
        sync_frequency_minutes=env_int("SYNC_FREQUENCY_MINUTES", 60),
        progress_every_pages=env_int("SYNC_PROGRESS_EVERY_PAGES", 5),
        detail_concurrency=env_int("DETAIL_CONCURRENCY", 10),
        detail_chunk_pause_sec=env_float("DETAIL_CHUNK_PAUSE_SEC", 0.5),
        detail_active_stale_minutes=env_int("DETAIL_ACTIVE_STALE_MINUTES", 60),
        detail_settled_stale_minutes=env_int("DETAIL_SETTLED_STALE_MINUTES", 7 * 24 * 60),
        detail_max_per_run=env_int("DETAIL_MAX_PER_RUN", 500),
        sched_sync_minutes=env_int("SCHED_SYNC_MINUTES", 15),
    )
