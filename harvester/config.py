"""Configuration utilities shared by all harvest sweeps."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from .pagination import TerminationPolicy

DEFAULT_REFERER = "https://www.google.com/"
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"

DEFAULT_USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Edge/110.0.0.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Version/16.1 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.1 Mobile/15E148 Safari/604.1",
)


@dataclass(slots=True)
class FetchConfig:
    max_attempts: int = 3
    min_delay: float = 0.3
    jitter: float = 0.25
    request_timeout: float = 15.0
    rate_limit_backoff: float = 5.0
    error_backoff: float = 2.0
    referer: str = DEFAULT_REFERER
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    user_agents: tuple[str, ...] = DEFAULT_USER_AGENTS


@dataclass(slots=True)
class PaginationConfig:
    """Termination limits for one crawl variant."""

    max_items: int = 1200
    max_empty_pages: int = 10
    margin_of_safety: int = 1
    refetch_window_days: float | None = None

    def policy(self) -> TerminationPolicy:
        window = None
        if self.refetch_window_days is not None and self.refetch_window_days > 0:
            window = timedelta(days=self.refetch_window_days)
        return TerminationPolicy(
            max_items=self.max_items,
            max_empty_pages=self.max_empty_pages,
            margin_of_safety=self.margin_of_safety,
            refetch_window=window,
        )


@dataclass(slots=True)
class ArchiveConfig:
    page_size: int = 23
    pause_every: int = 600
    pause_seconds: float = 60.0
    body_workers: int = 10


@dataclass(slots=True)
class SweepConfig:
    batch_size: int = 500
    reset_sleep: float = 12 * 60 * 60
    lease_timeout: float | None = 6 * 60 * 60
    error_sleep: float = 60.0

    def lease_timeout_delta(self) -> timedelta | None:
        if self.lease_timeout is None or self.lease_timeout <= 0:
            return None
        return timedelta(seconds=self.lease_timeout)


@dataclass(slots=True)
class HarvestConfig:
    db_url: Optional[str] = None
    fetch: FetchConfig = field(default_factory=FetchConfig)
    notes: PaginationConfig = field(default_factory=PaginationConfig)
    posts: PaginationConfig = field(
        default_factory=lambda: PaginationConfig(max_items=9999, refetch_window_days=14)
    )
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    write_chunk_size: int = 100


def _env_str(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {value!r}") from exc


def _env_float(name: str, default: float | None) -> float | None:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid number for {name}: {value!r}") from exc


def _optional_limit(value: float | None) -> float | None:
    if value is None or value <= 0:
        return None
    return value


def load_config_from_env() -> HarvestConfig:
    """Build a :class:`HarvestConfig` from ``HARVESTER_*`` environment variables."""

    config = HarvestConfig()
    config.db_url = _env_str("HARVESTER_DATABASE_URL")

    config.fetch.max_attempts = max(1, _env_int("HARVESTER_MAX_ATTEMPTS", config.fetch.max_attempts))
    config.fetch.min_delay = max(0.0, _env_float("HARVESTER_MIN_DELAY", config.fetch.min_delay))

    max_empty_pages = _env_int("HARVESTER_MAX_EMPTY_PAGES", config.notes.max_empty_pages)
    margin_of_safety = _env_int("HARVESTER_MARGIN_OF_SAFETY", config.notes.margin_of_safety)
    for pagination in (config.notes, config.posts):
        pagination.max_empty_pages = max(1, max_empty_pages)
        pagination.margin_of_safety = max(1, margin_of_safety)
    config.notes.max_items = max(1, _env_int("HARVESTER_NOTES_MAX_ITEMS", config.notes.max_items))
    config.posts.max_items = max(1, _env_int("HARVESTER_POSTS_MAX_ITEMS", config.posts.max_items))
    config.posts.refetch_window_days = _optional_limit(
        _env_float("HARVESTER_POSTS_REFETCH_DAYS", config.posts.refetch_window_days)
    )

    config.archive.body_workers = max(1, _env_int("HARVESTER_BODY_WORKERS", config.archive.body_workers))

    config.sweep.batch_size = max(1, _env_int("HARVESTER_BATCH_SIZE", config.sweep.batch_size))
    config.sweep.reset_sleep = max(0.0, _env_float("HARVESTER_RESET_SLEEP", config.sweep.reset_sleep))
    config.sweep.lease_timeout = _optional_limit(
        _env_float("HARVESTER_LEASE_TIMEOUT", config.sweep.lease_timeout)
    )
    return config


__all__ = [
    "ArchiveConfig",
    "FetchConfig",
    "HarvestConfig",
    "PaginationConfig",
    "SweepConfig",
    "load_config_from_env",
]
