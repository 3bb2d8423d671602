import os
from dataclasses import dataclass

from .cache import DEFAULT_CACHE_ENTRIES

DEFAULT_PAGE_SIZE = 1024
DEFAULT_MAX_PAGES = 1024
DEFAULT_HEAD_SEARCH_WINDOW = 1000
DEFAULT_LOG_BATCH_SIZE = 2000


@dataclass
class Config:
    rpc_url: str
    request_timeout: int = 10
    max_retries: int = 3
    backoff_seconds: float = 0.5
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    head_search_window: int = DEFAULT_HEAD_SEARCH_WINDOW
    log_batch_size: int = DEFAULT_LOG_BATCH_SIZE
    scan_workers: int = 1
    point_read_workers: int = 8
    cache_max_entries: int = DEFAULT_CACHE_ENTRIES
    log_level: str = "WARNING"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}.")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}.") from exc


def load_config() -> Config:
    """Load configuration from environment variables."""
    rpc_url = (os.getenv("RPC_URL") or "").strip()
    if not rpc_url:
        raise ValueError("RPC_URL is required but not set.")

    return Config(
        rpc_url=rpc_url,
        request_timeout=_env_int("REQUEST_TIMEOUT", 10, minimum=1),
        max_retries=_env_int("REQUEST_RETRIES", 3, minimum=1),
        backoff_seconds=_env_float("REQUEST_BACKOFF_SECONDS", 0.5),
        page_size=_env_int("STORAGE_PAGE_SIZE", DEFAULT_PAGE_SIZE, minimum=1),
        max_pages=_env_int("STORAGE_MAX_PAGES", DEFAULT_MAX_PAGES, minimum=1),
        head_search_window=_env_int("HEAD_SEARCH_WINDOW", DEFAULT_HEAD_SEARCH_WINDOW),
        log_batch_size=_env_int("LOG_BATCH_SIZE", DEFAULT_LOG_BATCH_SIZE, minimum=1),
        scan_workers=_env_int("SCAN_WORKERS", 1, minimum=1),
        point_read_workers=_env_int("POINT_READ_WORKERS", 8, minimum=1),
        cache_max_entries=_env_int("CACHE_MAX_ENTRIES", DEFAULT_CACHE_ENTRIES, minimum=1),
        log_level=(os.getenv("LOG_LEVEL") or "WARNING").strip().upper(),
    )
