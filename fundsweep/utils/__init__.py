"""Shared utilities: logging, worker pool, rate limiting, timestamps."""

from .logger import RunLogger, configure_global_logging
from .rate_limiter import GlobalRateLimiter, global_rate_limiter
from .timestamps import latest, to_datetime
from .worker_pool import WorkerPool

__all__ = [
    "RunLogger",
    "configure_global_logging",
    "GlobalRateLimiter",
    "global_rate_limiter",
    "latest",
    "to_datetime",
    "WorkerPool",
]
