"""In-process record store with the same contract as the Firestore adapter.

Used by tests and for rehearsing a run against an exported snapshot. Supports
failure injection so partial-commit behavior can be exercised.

Usage:
    store = InMemoryRecordStore({"users": {"u1": {"role": "coach"}}})
    store.get_by_id("users", "u1").data  # {"role": "coach"}
"""

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from ..errors import AlreadyExistsConflict, RecordNotFoundError, TransientStoreError
from ..schemas.corrections import DELETE_FIELD, SERVER_TIMESTAMP
from .base import OP_DELETE, OP_MERGE, OP_UPDATE, Record, RecordStore, WriteOp


def _resolve_markers(fields: dict[str, Any], now: datetime) -> dict[str, Any]:
    resolved = {}
    for key, value in fields.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
        elif isinstance(value, dict):
            resolved[key] = _resolve_markers(value, now)
        else:
            resolved[key] = copy.deepcopy(value)
    return resolved


def _apply_fields(data: dict[str, Any], fields: dict[str, Any], dotted: bool) -> None:
    """Apply fields in place. With dotted=True, "a.b" addresses a nested map."""
    for key, value in fields.items():
        target = data
        parts = key.split(".") if dotted else [key]
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        if value is DELETE_FIELD:
            target.pop(parts[-1], None)
        else:
            target[parts[-1]] = value


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store.

    Args:
        collections: Initial data as {collection_path: {doc_id: fields}}
        project_id: Scope reported by the store
        fail_on_commit: 1-based index of the batch commit that fails
        fail_attempts: How many attempts of that commit fail (None = all)
    """

    def __init__(
        self,
        collections: Optional[dict[str, dict[str, dict[str, Any]]]] = None,
        project_id: str = "memory",
        fail_on_commit: Optional[int] = None,
        fail_attempts: Optional[int] = None,
    ):
        self._project_id = project_id
        self._lock = threading.Lock()
        self._docs: dict[str, dict[str, dict[str, Any]]] = {}
        self._create_times: dict[str, datetime] = {}
        self.fail_on_commit = fail_on_commit
        self.fail_attempts = fail_attempts
        self._injected_failures = 0
        self.commits: list[list[WriteOp]] = []
        self.single_writes: list[tuple[str, str, str]] = []
        for collection, docs in (collections or {}).items():
            for doc_id, fields in docs.items():
                self.seed(collection, doc_id, fields)

    @property
    def scope(self) -> str:
        return self._project_id

    def seed(self, collection: str, doc_id: str, fields: dict[str, Any], create_time: Optional[datetime] = None):
        """Insert a document without recording it as a write."""
        with self._lock:
            self._docs.setdefault(collection, {})[doc_id] = copy.deepcopy(fields)
            self._create_times[f"{collection}/{doc_id}"] = create_time or datetime.now(timezone.utc)

    def snapshot(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Deep copy of the whole store, for assertions."""
        with self._lock:
            return copy.deepcopy(self._docs)

    @property
    def write_count(self) -> int:
        return sum(len(ops) for ops in self.commits) + len(self.single_writes)

    def _record(self, collection: str, doc_id: str, data: dict[str, Any]) -> Record:
        return Record(
            collection=collection,
            doc_id=doc_id,
            data=copy.deepcopy(data),
            create_time=self._create_times.get(f"{collection}/{doc_id}"),
        )

    # ─── Reads ───────────────────────────────────────────────────────────────

    def get_all(self, collection: str) -> Iterator[Record]:
        with self._lock:
            records = [self._record(collection, i, d) for i, d in self._docs.get(collection, {}).items()]
        yield from records

    def get_by_id(self, collection: str, doc_id: str) -> Optional[Record]:
        with self._lock:
            data = self._docs.get(collection, {}).get(doc_id)
            return None if data is None else self._record(collection, doc_id, data)

    def get_group(self, name: str) -> Iterator[Record]:
        with self._lock:
            records = [
                self._record(path, doc_id, data)
                for path, docs in self._docs.items()
                if path.rsplit("/", 1)[-1] == name
                for doc_id, data in docs.items()
            ]
        yield from records

    # ─── Writes ──────────────────────────────────────────────────────────────

    def _merge(self, collection: str, doc_id: str, fields: dict[str, Any], now: datetime):
        docs = self._docs.setdefault(collection, {})
        if doc_id not in docs:
            docs[doc_id] = {}
            self._create_times[f"{collection}/{doc_id}"] = now
        _apply_fields(docs[doc_id], _resolve_markers(fields, now), dotted=False)

    def _update(self, collection: str, doc_id: str, fields: dict[str, Any], now: datetime):
        docs = self._docs.get(collection, {})
        if doc_id not in docs:
            raise RecordNotFoundError(collection, doc_id)
        _apply_fields(docs[doc_id], _resolve_markers(fields, now), dotted=True)

    def apply_merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            self._merge(collection, doc_id, fields, datetime.now(timezone.utc))
            self.single_writes.append((OP_MERGE, collection, doc_id))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            self._update(collection, doc_id, fields, datetime.now(timezone.utc))
            self.single_writes.append((OP_UPDATE, collection, doc_id))

    def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._docs.get(collection, {}).pop(doc_id, None)
            self.single_writes.append((OP_DELETE, collection, doc_id))

    def create_if_absent(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            docs = self._docs.setdefault(collection, {})
            if doc_id in docs:
                raise AlreadyExistsConflict(collection, doc_id)
            now = datetime.now(timezone.utc)
            docs[doc_id] = _resolve_markers(fields, now)
            self._create_times[f"{collection}/{doc_id}"] = now
            self.single_writes.append(("create", collection, doc_id))

    def commit_batch(self, ops: list[WriteOp]) -> None:
        with self._lock:
            if self.fail_on_commit is not None and len(self.commits) + 1 == self.fail_on_commit:
                if self.fail_attempts is None or self._injected_failures < self.fail_attempts:
                    self._injected_failures += 1
                    raise TransientStoreError(f"Injected failure on commit {self.fail_on_commit}")

            # Validate before touching anything so the batch stays atomic
            for op in ops:
                if op.op == OP_UPDATE and op.doc_id not in self._docs.get(op.collection, {}):
                    raise RecordNotFoundError(op.collection, op.doc_id)
                if op.op not in (OP_MERGE, OP_UPDATE, OP_DELETE):
                    raise ValueError(f"Unknown batch op: {op.op}")

            now = datetime.now(timezone.utc)
            for op in ops:
                if op.op == OP_MERGE:
                    self._merge(op.collection, op.doc_id, op.fields, now)
                elif op.op == OP_UPDATE:
                    self._update(op.collection, op.doc_id, op.fields, now)
                else:
                    self._docs.get(op.collection, {}).pop(op.doc_id, None)
            self.commits.append(list(ops))
