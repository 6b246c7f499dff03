"""Bounded worker pool for fan-out reads and per-record evaluation.

Wraps ThreadPoolExecutor so a failing item is reported instead of aborting
the whole map. The worker cap doubles as the store concurrency cap.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Iterable


class WorkerPool:
    """ThreadPoolExecutor wrapper with exception handling."""

    def __init__(self, max_workers: int = 4, logger=None):
        """
        Initialize worker pool.

        Args:
            max_workers: Maximum number of concurrent worker threads
            logger: Optional logger instance
        """
        self.max_workers = max_workers
        self.logger = logger or logging.getLogger(__name__)
        self._stats_lock = threading.Lock()
        self.stats = {
            "max_workers": max_workers,
            "total_submitted": 0,
            "total_completed": 0,
            "total_successful": 0,
            "total_failed": 0,
        }

    def map(self, func: Callable[[Any], Any], items: Iterable[Any], desc: str = "Processing") -> list:
        """
        Process items in parallel with exception handling.

        Args:
            func: Worker function to execute
            items: Items to process
            desc: Description for log lines

        Returns:
            List of tuples (success, item, result_or_error) in completion order
        """
        items = list(items)
        results = []
        if not items:
            return results

        succeeded = 0
        failed = 0
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(items))) as executor:
            future_to_item = {executor.submit(func, item): item for item in items}
            with self._stats_lock:
                self.stats["total_submitted"] += len(items)

            for future in as_completed(future_to_item):
                item = future_to_item[future]
                with self._stats_lock:
                    self.stats["total_completed"] += 1
                try:
                    result = future.result()
                except Exception as e:
                    failed += 1
                    with self._stats_lock:
                        self.stats["total_failed"] += 1
                    results.append((False, item, e))
                    self.logger.error(f"{desc}: failed for {item}: {e}", exc_info=True)
                else:
                    succeeded += 1
                    with self._stats_lock:
                        self.stats["total_successful"] += 1
                    results.append((True, item, result))

        self.logger.debug(f"{desc} complete: {succeeded} successful, {failed} failed")
        return results

    def get_stats(self) -> dict:
        with self._stats_lock:
            return dict(self.stats)
