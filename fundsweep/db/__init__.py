"""Record store adapters.

Provides:
- RecordStore contract and Record/WriteOp types
- FirestoreRecordStore over google-cloud-firestore
- InMemoryRecordStore for tests and rehearsals
"""

from .base import OP_DELETE, OP_MERGE, OP_UPDATE, Record, RecordStore, WriteOp
from .memory_store import InMemoryRecordStore

__all__ = [
    "OP_DELETE",
    "OP_MERGE",
    "OP_UPDATE",
    "Record",
    "RecordStore",
    "WriteOp",
    "InMemoryRecordStore",
]
