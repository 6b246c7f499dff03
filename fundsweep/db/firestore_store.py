"""
Firestore record store.

Maps google-api-core failures onto the fundsweep error taxonomy:
- unavailable, deadline, quota, internal and retry exhaustion -> TransientStoreError
- already-exists / conflict on create -> AlreadyExistsConflict
- not-found on update -> RecordNotFoundError
- any other API error (permission, invalid argument, precondition) -> StoreError

Every call carries an explicit timeout so a stalled request fails instead of
hanging the run.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from google.api_core import exceptions as gexc
from google.cloud import firestore

from ..constants import DEFAULT_STORE_TIMEOUT_SECONDS
from ..errors import AlreadyExistsConflict, RecordNotFoundError, StoreError, TransientStoreError
from ..schemas.corrections import DELETE_FIELD, SERVER_TIMESTAMP
from .base import OP_DELETE, OP_MERGE, OP_UPDATE, Record, RecordStore, WriteOp

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.ResourceExhausted,
    gexc.TooManyRequests,
    gexc.InternalServerError,
    gexc.Aborted,
    gexc.RetryError,
)


def _to_firestore(fields: dict[str, Any]) -> dict[str, Any]:
    """Translate library-neutral markers into Firestore sentinels."""
    translated = {}
    for key, value in fields.items():
        if value is DELETE_FIELD:
            translated[key] = firestore.DELETE_FIELD
        elif value is SERVER_TIMESTAMP:
            translated[key] = firestore.SERVER_TIMESTAMP
        elif isinstance(value, dict):
            translated[key] = _to_firestore(value)
        else:
            translated[key] = value
    return translated


def _to_record(snapshot) -> Record:
    collection = snapshot.reference.path.rsplit("/", 1)[0]
    return Record(
        collection=collection,
        doc_id=snapshot.id,
        data=snapshot.to_dict() or {},
        create_time=snapshot.create_time,
    )


@contextmanager
def _store_errors(action: str, path: str):
    try:
        yield
    except TRANSIENT_ERRORS as e:
        raise TransientStoreError(f"{action} {path} failed: {e}") from e
    except (gexc.NotFound, gexc.Conflict):
        raise
    except gexc.GoogleAPICallError as e:
        raise StoreError(f"{action} {path} failed: {e}") from e


class FirestoreRecordStore(RecordStore):
    """RecordStore backed by google-cloud-firestore."""

    def __init__(
        self,
        client: firestore.Client,
        project_id: Optional[str] = None,
        timeout: float = DEFAULT_STORE_TIMEOUT_SECONDS,
    ):
        self.client = client
        self._project_id = project_id or client.project
        self.timeout = timeout

    @property
    def scope(self) -> str:
        return self._project_id

    def _doc(self, collection: str, doc_id: str):
        return self.client.collection(collection).document(doc_id)

    def get_all(self, collection: str) -> Iterator[Record]:
        with _store_errors("read", collection):
            for snapshot in self.client.collection(collection).stream(timeout=self.timeout):
                yield _to_record(snapshot)

    def get_by_id(self, collection: str, doc_id: str) -> Optional[Record]:
        with _store_errors("get", f"{collection}/{doc_id}"):
            snapshot = self._doc(collection, doc_id).get(timeout=self.timeout)
        return _to_record(snapshot) if snapshot.exists else None

    def get_group(self, name: str) -> Iterator[Record]:
        with _store_errors("group read", name):
            for snapshot in self.client.collection_group(name).stream(timeout=self.timeout):
                yield _to_record(snapshot)

    def apply_merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        with _store_errors("merge", f"{collection}/{doc_id}"):
            self._doc(collection, doc_id).set(_to_firestore(fields), merge=True, timeout=self.timeout)

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        path = f"{collection}/{doc_id}"
        try:
            with _store_errors("update", path):
                self._doc(collection, doc_id).update(_to_firestore(fields), timeout=self.timeout)
        except gexc.NotFound as e:
            raise RecordNotFoundError(collection, doc_id) from e

    def delete(self, collection: str, doc_id: str) -> None:
        with _store_errors("delete", f"{collection}/{doc_id}"):
            self._doc(collection, doc_id).delete(timeout=self.timeout)

    def create_if_absent(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        path = f"{collection}/{doc_id}"
        try:
            with _store_errors("create", path):
                self._doc(collection, doc_id).create(_to_firestore(fields), timeout=self.timeout)
        except gexc.Conflict as e:  # AlreadyExists subclasses Conflict
            raise AlreadyExistsConflict(collection, doc_id) from e

    def commit_batch(self, ops: list[WriteOp]) -> None:
        if not ops:
            return
        batch = self.client.batch()
        for op in ops:
            ref = self._doc(op.collection, op.doc_id)
            if op.op == OP_MERGE:
                batch.set(ref, _to_firestore(op.fields), merge=True)
            elif op.op == OP_UPDATE:
                batch.update(ref, _to_firestore(op.fields))
            elif op.op == OP_DELETE:
                batch.delete(ref)
            else:
                raise ValueError(f"Unknown batch op: {op.op}")

        first = ops[0].path
        try:
            with _store_errors("commit", f"batch of {len(ops)} starting at {first}"):
                batch.commit(timeout=self.timeout)
        except gexc.NotFound as e:
            raise RecordNotFoundError(*first.rsplit("/", 1)) from e
        logger.debug(f"Committed batch of {len(ops)} ops starting at {first}")
