"""
Record store interface.

Every store call may raise TransientStoreError (network, quota, rate limit);
callers retry at the batch-commit boundary, never per record. Collection
names may be sub-collection paths such as "campaigns/c1/public_donors".
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Optional

OP_MERGE = "merge"
OP_UPDATE = "update"
OP_DELETE = "delete"


@dataclass
class Record:
    """A document read from the store."""

    collection: str
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)
    create_time: Optional[datetime] = None  # store-side creation time, if known

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass(frozen=True)
class WriteOp:
    """One operation inside an atomic batch (merge, update or delete)."""

    op: str
    collection: str
    doc_id: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"


class RecordStore(ABC):
    """
    Minimal document store contract used by the reconciliation engine.

    Subclasses must implement reads (get_all, get_by_id, get_group), single
    writes (apply_merge, update, delete, create_if_absent) and commit_batch.
    """

    @property
    @abstractmethod
    def scope(self) -> str:
        """Tenant/project identifier the store is bound to."""
        ...

    @abstractmethod
    def get_all(self, collection: str) -> Iterator[Record]:
        """Yield every document in a collection (no ordering guarantee)."""
        ...

    @abstractmethod
    def get_by_id(self, collection: str, doc_id: str) -> Optional[Record]:
        """Return the document, or None when it does not exist."""
        ...

    @abstractmethod
    def get_group(self, name: str) -> Iterator[Record]:
        """Yield every document of every sub-collection named `name`."""
        ...

    @abstractmethod
    def apply_merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Merge fields into a document, creating it if absent."""
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """
        Update fields of an existing document.

        Raises:
            RecordNotFoundError: If the document does not exist
        """
        ...

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None: ...

    @abstractmethod
    def create_if_absent(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """
        Create a document only if nothing exists at the id.

        Raises:
            AlreadyExistsConflict: If a document already exists
        """
        ...

    @abstractmethod
    def commit_batch(self, ops: list[WriteOp]) -> None:
        """Apply ops atomically (all or none). Ops are unordered within a batch."""
        ...
