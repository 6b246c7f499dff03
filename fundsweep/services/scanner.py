"""Collection scanner: lazy, restartable reads of whole collections."""

import logging
from typing import Iterable, Iterator

from ..db.base import Record, RecordStore
from ..errors import FundsweepError, StoreError
from ..utils.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class CollectionScan:
    """A re-iterable view of one collection. Each iteration re-reads the store."""

    def __init__(self, store: RecordStore, collection: str):
        self.store = store
        self.collection = collection

    def __iter__(self) -> Iterator[Record]:
        return iter(self.store.get_all(self.collection))


class CollectionScanner:
    """Reads collections for evaluation. Never mutates."""

    def __init__(self, store: RecordStore, pool: WorkerPool = None):
        self.store = store
        self.pool = pool or WorkerPool(max_workers=4)

    def scan(self, collection: str) -> CollectionScan:
        return CollectionScan(self.store, collection)

    def scan_all(self, collections: Iterable[str]) -> dict[str, list[Record]]:
        """
        Materialize several collections concurrently.

        Returns:
            {collection: [Record, ...]} with records sorted by document id
            (empty list for empty or missing collections)

        Raises:
            StoreError: If any read fails (TransientStoreError when retryable)
        """
        collections = list(collections)
        results = self.pool.map(lambda c: list(self.scan(c)), collections, desc="Scanning")
        scanned: dict[str, list[Record]] = {}
        for success, collection, result in results:
            if not success:
                if isinstance(result, FundsweepError):
                    raise result
                raise StoreError(f"Reading {collection} failed: {result}") from result
            scanned[collection] = sorted(result, key=lambda r: r.doc_id)
            logger.info(f"Scanned {len(result)} {collection}")
        return {c: scanned[c] for c in collections}
