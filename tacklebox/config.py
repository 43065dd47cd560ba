"""Service configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv(override=False)


# -----------------------------
# Tunables / defaults
# -----------------------------

DEFAULT_DATABASE_URL: str = "sqlite:///./tacklebox.db"
DEFAULT_RESULTS_DIR: str = "./results"

DEFAULT_CONCURRENCY: int = 5
DEFAULT_ITEM_TIMEOUT_S: float = 90.0
DEFAULT_PAGE_TIMEOUT_S: float = 15.0
DEFAULT_HTTP_TIMEOUT_S: float = 20.0
DEFAULT_EVENT_QUEUE_SIZE: int = 1000
DEFAULT_KEEP_COMPLETED: int = 5
DEFAULT_SHUTDOWN_GRACE_S: float = 10.0


@dataclass(frozen=True)
class Settings:
    environment: str
    log_level: str
    database_url: str
    results_dir: Path

    concurrency: int
    item_timeout_s: float
    page_timeout_s: float
    http_timeout_s: float
    event_queue_size: int
    keep_completed_per_type: int
    shutdown_grace_s: float
    headless: bool

    serp_api_key: Optional[str]
    gemini_api_key: Optional[str]

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def resolve_api_key(self, provided: Optional[str], fallback: Optional[str]) -> Optional[str]:
        """
        The literal key "test" is swapped for the server-side key in development,
        so the UI can be exercised without pasting real credentials.
        """
        if provided == "test" and self.is_development:
            return fallback
        return provided or fallback


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: int) -> int:
    value = int(os.getenv(name, str(default)))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer.")
    return value


def _positive_float(name: str, default: float) -> float:
    value = float(os.getenv(name, str(default)))
    if value <= 0:
        raise ValueError(f"{name} must be a positive number.")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings(
        environment=os.getenv("TACKLEBOX_ENV", os.getenv("NODE_ENV", "production")).strip().lower(),
        log_level=os.getenv("TACKLEBOX_LOG_LEVEL", "INFO").strip().upper(),
        database_url=os.getenv("TACKLEBOX_DATABASE_URL", DEFAULT_DATABASE_URL).strip(),
        results_dir=Path(os.getenv("TACKLEBOX_RESULTS_DIR", DEFAULT_RESULTS_DIR).strip()),
        # CONCURRENCY is the historical name used by the scraper scripts
        concurrency=_positive_int("CONCURRENCY", DEFAULT_CONCURRENCY),
        item_timeout_s=_positive_float("TACKLEBOX_ITEM_TIMEOUT_S", DEFAULT_ITEM_TIMEOUT_S),
        page_timeout_s=_positive_float("TACKLEBOX_PAGE_TIMEOUT_S", DEFAULT_PAGE_TIMEOUT_S),
        http_timeout_s=_positive_float("TACKLEBOX_HTTP_TIMEOUT_S", DEFAULT_HTTP_TIMEOUT_S),
        event_queue_size=_positive_int("TACKLEBOX_EVENT_QUEUE_SIZE", DEFAULT_EVENT_QUEUE_SIZE),
        keep_completed_per_type=_positive_int("TACKLEBOX_KEEP_COMPLETED", DEFAULT_KEEP_COMPLETED),
        shutdown_grace_s=_positive_float("TACKLEBOX_SHUTDOWN_GRACE_S", DEFAULT_SHUTDOWN_GRACE_S),
        headless=_parse_bool(os.getenv("RUN_HEADLESS"), True),
        serp_api_key=os.getenv("SERP_API_KEY") or None,
        gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
