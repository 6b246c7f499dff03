"""
Error taxonomy for sanitize runs.

Fatal errors (configuration, unrecovered store failures) derive from
FundsweepError. Per-record problems are never raised; they become issues
(see schemas.issues).
"""

from typing import Optional


class FundsweepError(Exception):
    """Base class for all fundsweep errors."""


class ConfigurationError(FundsweepError):
    """Missing or invalid run configuration. Raised before any store access."""

    def __init__(self, message: str, missing: Optional[str] = None):
        super().__init__(message)
        self.missing = missing


class StoreError(FundsweepError):
    """Store failure that retrying will not fix (permissions, invalid request)."""


class TransientStoreError(StoreError):
    """Network, quota or rate-limit failure. Retryable at the batch boundary."""


class AlreadyExistsConflict(FundsweepError):
    """A create-if-absent target already exists (desired end state holds)."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class BatchCommitError(FundsweepError):
    """A commit chunk failed after retries. Earlier chunks stay committed."""

    def __init__(self, chunk_index: int, paths: list[str], cause: Exception):
        super().__init__(f"Commit chunk {chunk_index} failed ({len(paths)} ops): {cause}")
        self.chunk_index = chunk_index
        self.paths = paths
        self.cause = cause


class RunStateError(FundsweepError):
    """Illegal run state transition."""


class RecordNotFoundError(FundsweepError):
    """An update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id
