"""
Thread-safe rate limiter for store writes.

Commit chunks are issued sequentially, but reads fan out across workers and
several stores may share one project quota. The limiter spaces calls per key
(e.g. "commit:<project>") across all threads.

Usage:
    from fundsweep.utils.rate_limiter import global_rate_limiter

    global_rate_limiter.wait("commit:my-project", delay=0.2)
    batch.commit()
"""

import threading
import time
from typing import Dict, Optional


class GlobalRateLimiter:
    """Per-key minimum spacing between calls."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._last_call: Dict[str, float] = {}
        self._master_lock = threading.Lock()

    def _get_key_lock(self, key: str) -> threading.Lock:
        with self._master_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
                self._last_call[key] = 0.0
            return self._locks[key]

    def wait(self, key: str, delay: float) -> float:
        """
        Block until at least `delay` seconds passed since the last call for key.

        Returns:
            Seconds actually waited
        """
        if delay <= 0:
            return 0.0
        lock = self._get_key_lock(key)
        with lock:
            elapsed = time.monotonic() - self._last_call[key]
            wait_time = max(0.0, delay - elapsed)
            if wait_time:
                time.sleep(wait_time)
            self._last_call[key] = time.monotonic()
            return wait_time

    def reset(self, key: Optional[str] = None):
        with self._master_lock:
            if key:
                self._last_call[key] = 0.0
            else:
                self._last_call = {k: 0.0 for k in self._last_call}


global_rate_limiter = GlobalRateLimiter()
