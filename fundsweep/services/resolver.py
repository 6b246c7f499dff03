"""
Cross-reference resolver.

Holds a per-run snapshot of the reference collections as {id: fields} maps so
rules can resolve foreign keys without point reads. The snapshot is taken
once and never refreshed from the store: the run assumes the reference
collections are quiescent while it executes. Planned corrections are
overlaid with apply() after each collection pass so later passes see the
repaired state (dry-run and apply overlay identically).
"""

import copy
import logging
import threading
from typing import Any, Iterable, Optional

from ..db.base import Record, RecordStore
from ..errors import FundsweepError, StoreError
from ..schemas.corrections import DELETE_FIELD, CorrectionKind, PlannedWrite
from ..utils.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def get_path(data: dict[str, Any], dotted: str) -> Any:
    """Read a possibly dotted field ("donor.email") from a document."""
    value: Any = data
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class CrossReferenceResolver:
    """Snapshot of reference collections keyed by document id."""

    def __init__(self, store: Optional[RecordStore] = None, pool: Optional[WorkerPool] = None):
        self.store = store
        self.pool = pool or WorkerPool(max_workers=4)
        self._maps: dict[str, dict[str, dict[str, Any]]] = {}
        self._create_times: dict[str, Any] = {}
        self._groups: dict[str, dict[str, dict[str, Any]]] = {}
        self._indexes: dict[tuple[str, str], dict[Any, list[str]]] = {}
        self._index_lock = threading.Lock()

    # ─── Loading ─────────────────────────────────────────────────────────────

    def add(self, collection: str, records: Iterable[Record]):
        """Register already-scanned records as the snapshot of a collection."""
        table = self._maps.setdefault(collection, {})
        for record in records:
            table[record.doc_id] = copy.deepcopy(record.data)
            if record.create_time is not None:
                self._create_times[record.path] = record.create_time
        self._invalidate(collection)

    def load(self, collections: Iterable[str]):
        """
        Load collections from the store, fanning out across the worker pool.

        Collections already registered are skipped.

        Raises:
            StoreError: If any read fails (TransientStoreError when retryable)
        """
        pending = [c for c in collections if c not in self._maps]
        if not pending:
            return
        if self.store is None:
            raise ValueError("Resolver has no store to load from")

        results = self.pool.map(lambda c: list(self.store.get_all(c)), pending, desc="Loading references")
        for success, collection, result in results:
            if not success:
                if isinstance(result, FundsweepError):
                    raise result
                raise StoreError(f"Loading {collection} failed: {result}") from result
            self.add(collection, result)
            logger.info(f"Loaded {len(result)} {collection} references")

    def load_group(self, name: str):
        """Load a sub-collection group keyed by full document path."""
        if name in self._groups:
            return
        if self.store is None:
            raise ValueError("Resolver has no store to load from")
        try:
            docs = {r.path: copy.deepcopy(r.data) for r in self.store.get_group(name)}
        except FundsweepError:
            raise
        except Exception as e:
            raise StoreError(f"Loading {name} group failed: {e}") from e
        self._groups[name] = docs
        logger.info(f"Loaded {len(self._groups[name])} {name} group documents")

    # ─── Lookups ─────────────────────────────────────────────────────────────

    @property
    def collections(self) -> list[str]:
        return list(self._maps)

    def resolve(self, collection: str, doc_id: Any) -> Optional[dict[str, Any]]:
        """Fields of the document, or None when absent (or id is not a usable key)."""
        if not isinstance(doc_id, str) or not doc_id:
            return None
        return self._maps.get(collection, {}).get(doc_id)

    def exists(self, collection: str, doc_id: Any) -> bool:
        return self.resolve(collection, doc_id) is not None

    def records(self, collection: str) -> dict[str, dict[str, Any]]:
        return self._maps.get(collection, {})

    def create_time(self, collection: str, doc_id: str):
        return self._create_times.get(f"{collection}/{doc_id}")

    def group_exists(self, name: str, path: str) -> bool:
        return path in self._groups.get(name, {})

    def group(self, name: str) -> dict[str, dict[str, Any]]:
        return self._groups.get(name, {})

    def document(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Fields by collection path, including sub-collection group documents."""
        if "/" in collection:
            return self._groups.get(collection.rsplit("/", 1)[-1], {}).get(f"{collection}/{doc_id}")
        return self._maps.get(collection, {}).get(doc_id)

    def documents(self, collection: str) -> list[Record]:
        """Current state of a collection as records, sorted by id."""
        return [
            Record(
                collection=collection,
                doc_id=doc_id,
                data=copy.deepcopy(data),
                create_time=self.create_time(collection, doc_id),
            )
            for doc_id, data in sorted(self._maps.get(collection, {}).items())
        ]

    def fork(self) -> "CrossReferenceResolver":
        """Independent deep copy of the snapshot (no store attached)."""
        other = CrossReferenceResolver(pool=self.pool)
        other._maps = copy.deepcopy(self._maps)
        other._groups = copy.deepcopy(self._groups)
        other._create_times = dict(self._create_times)
        return other

    def find_by(self, collection: str, field_name: str, value: Any) -> list[tuple[str, dict[str, Any]]]:
        """
        All documents whose (possibly dotted) field equals value.

        Backed by a lazily built index that is dropped whenever the
        collection changes.
        """
        if value is None:
            return []
        key = (collection, field_name)
        with self._index_lock:
            index = self._indexes.get(key)
            if index is None:
                index = {}
                for doc_id, data in self._maps.get(collection, {}).items():
                    found = get_path(data, field_name)
                    if found is not None and not isinstance(found, (dict, list)):
                        index.setdefault(found, []).append(doc_id)
                self._indexes[key] = index
        table = self._maps.get(collection, {})
        try:
            ids = index.get(value, [])
        except TypeError:  # unhashable lookup value
            return []
        return [(doc_id, table[doc_id]) for doc_id in sorted(ids) if doc_id in table]

    # ─── Overlay ─────────────────────────────────────────────────────────────

    def _invalidate(self, collection: str):
        with self._index_lock:
            for key in [k for k in self._indexes if k[0] == collection]:
                del self._indexes[key]

    def apply(self, write: PlannedWrite):
        """Overlay one planned write on the snapshot."""
        collection, doc_id = write.collection, write.doc_id
        group_name = collection.rsplit("/", 1)[-1] if "/" in collection else None

        if group_name is not None:
            docs = self._groups.setdefault(group_name, {})
            if write.kind == CorrectionKind.DELETE_RECORD:
                docs.pop(write.path, None)
            elif write.kind == CorrectionKind.CREATE_RECORD:
                docs.setdefault(write.path, copy.deepcopy(write.correction.fields))
            elif write.kind == CorrectionKind.UPDATE_FIELDS:
                self._overlay(docs.setdefault(write.path, {}), write.correction.fields)
            return

        table = self._maps.setdefault(collection, {})
        if write.kind == CorrectionKind.DELETE_RECORD:
            table.pop(doc_id, None)
        elif write.kind == CorrectionKind.CREATE_RECORD:
            table.setdefault(doc_id, copy.deepcopy(write.correction.fields))
        elif write.kind == CorrectionKind.UPDATE_FIELDS:
            self._overlay(table.setdefault(doc_id, {}), write.correction.fields)
        self._invalidate(collection)

    @staticmethod
    def _overlay(target: dict[str, Any], fields: dict[str, Any]):
        for field_name, value in fields.items():
            if value is DELETE_FIELD:
                target.pop(field_name, None)
            else:
                target[field_name] = copy.deepcopy(value)

    def apply_all(self, writes: Iterable[PlannedWrite]):
        for write in writes:
            self.apply(write)
