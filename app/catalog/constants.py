"""Environment-driven knobs for the catalog pipeline."""

from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


CATALOG_MAX_ATTEMPTS = max(1, _env_int("CATALOG_MAX_ATTEMPTS", 3))

RUN_PROCESSING = "processing"
RUN_PAUSED = "paused"
RUN_STOPPED = "stopped"
RUN_BLOCKED = "blocked"
RUN_COMPLETED = "completed"
ACTIVE_RUN_STATUSES = (RUN_PROCESSING, RUN_PAUSED, RUN_STOPPED, RUN_BLOCKED)
# a stopped run stays active for reporting but does not hold back a new one
LIVE_RUN_STATUSES = (RUN_PROCESSING, RUN_PAUSED, RUN_BLOCKED)

ITEM_PENDING = "pending"
ITEM_QUEUED = "queued"
ITEM_PROCESSING = "processing"
ITEM_COMPLETED = "completed"
ITEM_FAILED = "failed"

PRICE_MIN = _env_float("CATALOG_PRICE_MIN", 0.01)
PRICE_MAX = _env_float("CATALOG_PRICE_MAX", 100_000_000.0)
DEFAULT_CURRENCY = os.environ.get("CATALOG_DEFAULT_CURRENCY", "COP")

DISCOVERY_HARD_LIMIT = max(1, _env_int("CATALOG_DISCOVERY_HARD_LIMIT", 5000))
FETCH_TIMEOUT_SECONDS = _env_float("CATALOG_FETCH_TIMEOUT_SECONDS", 15.0)
USER_AGENT = os.environ.get("CATALOG_USER_AGENT", "CatalogExtractor/1.0")


def consecutive_error_limit() -> int:
    return max(2, _env_int("CATALOG_EXTRACT_CONSECUTIVE_ERROR_LIMIT", 5))


def transient_counts_toward_breaker() -> bool:
    return _env_flag("CATALOG_TRANSIENT_COUNTS_TOWARD_BREAKER", False)


def stuck_minutes() -> float:
    return max(0.0, _env_float("CATALOG_ITEM_STUCK_MINUTES", 30))


def queued_stale_minutes() -> float:
    return max(0.0, _env_float("CATALOG_QUEUE_STALE_MINUTES", 15))


def discovery_limit_override() -> int | None:
    value = _env_int("CATALOG_EXTRACT_DISCOVERY_LIMIT", 0)
    return value if value > 0 else None


def sitemap_limit() -> int:
    return max(0, _env_int("CATALOG_EXTRACT_SITEMAP_LIMIT", 5000))


def pdp_llm_enabled() -> bool:
    return _env_flag("CATALOG_PDP_LLM_ENABLED", True)


def pdp_llm_min_confidence() -> float:
    return min(0.99, max(0.1, _env_float("CATALOG_PDP_LLM_CONFIDENCE_MIN", 0.55)))


def drain_defaults() -> tuple[int, int, int]:
    """Batch, concurrency and wall-clock budget (ms) used when a request omits them."""
    return (
        _env_int("CATALOG_DRAIN_BATCH", 0),
        _env_int("CATALOG_DRAIN_CONCURRENCY", 5),
        _env_int("CATALOG_DRAIN_MAX_RUNTIME_MS", 20000),
    )


def queue_enabled() -> bool:
    return _env_flag("CATALOG_QUEUE_ENABLED", False)


def queue_enqueue_limit() -> int:
    return max(1, _env_int("CATALOG_QUEUE_ENQUEUE_LIMIT", 50))


def refresh_interval_days() -> int:
    return max(1, _env_int("CATALOG_REFRESH_INTERVAL_DAYS", 7))


def refresh_jitter_hours() -> float:
    return max(0.0, _env_float("CATALOG_REFRESH_JITTER_HOURS", 12))


def refresh_max_brands() -> int:
    return max(1, _env_int("CATALOG_REFRESH_MAX_BRANDS", 4))


def refresh_discovery_limit() -> int:
    return max(1, _env_int("CATALOG_REFRESH_DISCOVERY_LIMIT", 200))
