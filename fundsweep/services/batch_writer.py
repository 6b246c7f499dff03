"""
Batch writer: turns planned writes into store operations.

- Field updates and deletes are chunked into atomic batches of
  policy.batch_size (kept below the store's 500-op cap) and committed
  strictly one after another.
- Creates (derived coaches, public donors) are issued one by one through
  create-if-absent; an existing document counts as done.
- A failing chunk is retried on transient errors with doubling backoff,
  then the write stops. Earlier chunks stay committed; the failure names
  the chunk index and its document paths.
- A stop request is honoured between chunks, never inside one.
- Dry run touches nothing and reports the same planned writes.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..db.base import OP_DELETE, OP_UPDATE, RecordStore, WriteOp
from ..errors import AlreadyExistsConflict, BatchCommitError, TransientStoreError
from ..schemas.corrections import CorrectionKind, PlannedWrite
from ..schemas.policy import SanitizePolicy
from ..utils.rate_limiter import GlobalRateLimiter, global_rate_limiter

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of one write step."""

    dry_run: bool
    planned: int = 0
    committed: int = 0
    created: int = 0
    skipped_existing: int = 0
    chunks_total: int = 0
    chunks_committed: int = 0
    interrupted: bool = False
    error: Optional[BatchCommitError] = None
    committed_paths: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.interrupted

    def to_dict(self) -> dict:
        result = {
            "dryRun": self.dry_run,
            "planned": self.planned,
            "committed": self.committed,
            "created": self.created,
            "skippedExisting": self.skipped_existing,
            "chunksTotal": self.chunks_total,
            "chunksCommitted": self.chunks_committed,
            "interrupted": self.interrupted,
        }
        if self.error is not None:
            result["error"] = {
                "chunkIndex": self.error.chunk_index,
                "paths": self.error.paths,
                "message": str(self.error.cause),
            }
        return result


def to_write_op(write: PlannedWrite) -> WriteOp:
    if write.kind == CorrectionKind.DELETE_RECORD:
        return WriteOp(OP_DELETE, write.collection, write.doc_id)
    if write.kind == CorrectionKind.UPDATE_FIELDS:
        return WriteOp(OP_UPDATE, write.collection, write.doc_id, dict(write.correction.fields))
    raise ValueError(f"{write.kind.value} is not a batch operation ({write.path})")


def chunked(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchWriter:
    """Commits planned writes to a RecordStore, or just counts them in dry run."""

    def __init__(
        self,
        store: RecordStore,
        policy: SanitizePolicy,
        stop_event: Optional[threading.Event] = None,
        rate_limiter: Optional[GlobalRateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.policy = policy
        self.stop_event = stop_event
        self.rate_limiter = rate_limiter or global_rate_limiter
        self.sleep = sleep

    def _stopped(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def _with_retries(self, chunk_index: int, paths: list[str], action: Callable[[], None]):
        """
        Run one commit step, retrying transient failures.

        Raises:
            BatchCommitError: When retries are exhausted or the failure is not transient
        """
        retries = self.policy.commit_retries
        for attempt in range(retries + 1):
            self.rate_limiter.wait(f"commit:{self.store.scope}", self.policy.min_commit_interval_seconds)
            try:
                action()
                return
            except TransientStoreError as e:
                if attempt == retries:
                    raise BatchCommitError(chunk_index, paths, e) from e
                backoff = self.policy.commit_backoff_seconds * (2**attempt)
                logger.warning(
                    f"Chunk {chunk_index} failed ({e}), retry {attempt + 1}/{retries} in {backoff:.1f}s"
                )
                self.sleep(backoff)
            except Exception as e:
                raise BatchCommitError(chunk_index, paths, e) from e

    def write(self, writes: list[PlannedWrite], dry_run: bool = True) -> WriteResult:
        """
        Commit (or, in dry run, only count) planned writes.

        Never raises for store failures; they end up in WriteResult.error.
        """
        batch_writes = [w for w in writes if w.kind in (CorrectionKind.UPDATE_FIELDS, CorrectionKind.DELETE_RECORD)]
        creates = [w for w in writes if w.kind == CorrectionKind.CREATE_RECORD]
        chunks = chunked(batch_writes, self.policy.batch_size)

        result = WriteResult(dry_run=dry_run, planned=len(batch_writes) + len(creates))
        result.chunks_total = len(chunks) + len(creates)

        if dry_run:
            for write in writes:
                logger.debug(f"[dry-run] would {write.kind.value} {write.path}")
            logger.info(f"Dry run: {result.planned} writes planned, nothing committed")
            return result

        try:
            for index, chunk in enumerate(chunks):
                if self._stopped():
                    result.interrupted = True
                    logger.warning(f"Stop requested, {len(chunks) - index} chunks not committed")
                    return result
                ops = [to_write_op(w) for w in chunk]
                paths = [op.path for op in ops]
                self._with_retries(index, paths, lambda: self.store.commit_batch(ops))
                result.chunks_committed += 1
                result.committed += len(ops)
                result.committed_paths.extend(paths)
                logger.info(f"Committed chunk {index + 1}/{len(chunks)} ({len(ops)} ops)")

            for offset, write in enumerate(creates):
                if self._stopped():
                    result.interrupted = True
                    logger.warning(f"Stop requested, {len(creates) - offset} creates not issued")
                    return result
                index = len(chunks) + offset
                try:
                    self._with_retries(
                        index,
                        [write.path],
                        lambda: self.store.create_if_absent(write.collection, write.doc_id, write.correction.fields),
                    )
                    result.created += 1
                    result.committed += 1
                except BatchCommitError as e:
                    if not isinstance(e.cause, AlreadyExistsConflict):
                        raise
                    result.skipped_existing += 1
                    logger.debug(f"{write.path} already exists, skipped")
                result.chunks_committed += 1
                result.committed_paths.append(write.path)
        except BatchCommitError as e:
            result.error = e
            logger.error(f"{e} | first paths: {e.paths[:5]}")
        return result
