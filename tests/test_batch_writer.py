"""Tests for chunked commits, retries, partial failure and stop handling."""

import threading

import pytest

from fundsweep.constants import COACHES, USERS
from fundsweep.schemas.corrections import CorrectionSet, PlannedWrite
from fundsweep.services.batch_writer import BatchWriter, chunked, to_write_op

# ─── Helpers ──────────────────────────────────────────────────────────────────


def _updates(count: int) -> list[PlannedWrite]:
    return [
        PlannedWrite(USERS, f"u{i:03d}", CorrectionSet.update_fields({"uid": f"u{i:03d}"}))
        for i in range(count)
    ]


def _seeded(make_store, count: int, **kwargs):
    return make_store({USERS: {f"u{i:03d}": {"role": "coach"} for i in range(count)}}, **kwargs)


class _Sleeps:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


# ─── Helpers under test ─────────────────────────────────────────────────────


class TestChunking:
    def test_chunked(self):
        assert chunked(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
        assert chunked([], 3) == []

    def test_create_is_not_a_batch_op(self):
        write = PlannedWrite(COACHES, "u1", CorrectionSet.create_record({"uid": "u1"}))
        with pytest.raises(ValueError):
            to_write_op(write)


# ─── BatchWriter ────────────────────────────────────────────────────────────


class TestBatchWriter:
    """Sequential chunk commits against InMemoryRecordStore."""

    def test_dry_run_touches_nothing(self, make_store, policy, rate_limiter):
        store = _seeded(make_store, 5)
        result = BatchWriter(store, policy, rate_limiter=rate_limiter).write(_updates(5), dry_run=True)

        assert result.dry_run
        assert result.planned == 5
        assert result.committed == 0
        assert store.write_count == 0

    def test_chunks_respect_batch_size(self, make_store, policy, rate_limiter):
        policy = policy.model_copy(update={"batch_size": 2})
        store = _seeded(make_store, 5)
        result = BatchWriter(store, policy, rate_limiter=rate_limiter).write(_updates(5), dry_run=False)

        assert result.ok
        assert [len(ops) for ops in store.commits] == [2, 2, 1]
        assert result.chunks_total == 3
        assert result.chunks_committed == 3
        assert result.committed == 5
        assert store.snapshot()[USERS]["u004"]["uid"] == "u004"

    def test_transient_failure_retried_with_doubling_backoff(self, make_store, policy, rate_limiter):
        policy = policy.model_copy(update={"commit_backoff_seconds": 1.0, "commit_retries": 2})
        store = _seeded(make_store, 1, fail_on_commit=1, fail_attempts=2)
        sleeps = _Sleeps()
        result = BatchWriter(store, policy, rate_limiter=rate_limiter, sleep=sleeps).write(_updates(1), dry_run=False)

        assert result.ok
        assert sleeps.calls == [1.0, 2.0]
        assert store.snapshot()[USERS]["u000"]["uid"] == "u000"

    def test_exhausted_retries_stop_with_chunk_index(self, make_store, policy, rate_limiter):
        policy = policy.model_copy(update={"batch_size": 2, "commit_retries": 1})
        store = _seeded(make_store, 6, fail_on_commit=2)
        result = BatchWriter(store, policy, rate_limiter=rate_limiter, sleep=_Sleeps()).write(_updates(6), dry_run=False)

        assert not result.ok
        assert result.error.chunk_index == 1
        assert result.error.paths == ["users/u002", "users/u003"]
        assert result.chunks_committed == 1
        assert result.committed_paths == ["users/u000", "users/u001"]
        # earlier chunk stays committed, later chunks never attempted
        snapshot = store.snapshot()[USERS]
        assert snapshot["u001"].get("uid") == "u001"
        assert "uid" not in snapshot["u002"]
        assert "uid" not in snapshot["u004"]

    def test_missing_document_is_not_retried(self, make_store, policy, rate_limiter):
        store = _seeded(make_store, 0)
        sleeps = _Sleeps()
        result = BatchWriter(store, policy, rate_limiter=rate_limiter, sleep=sleeps).write(_updates(1), dry_run=False)

        assert result.error is not None
        assert result.error.chunk_index == 0
        assert sleeps.calls == []

    def test_stop_between_chunks(self, make_store, policy, rate_limiter):
        policy = policy.model_copy(update={"batch_size": 2})
        store = _seeded(make_store, 6)
        stop = threading.Event()

        class StopAfterFirst(BatchWriter):
            def _stopped(self):
                stopped = stop.is_set()
                stop.set()
                return stopped

        result = StopAfterFirst(store, policy, rate_limiter=rate_limiter).write(_updates(6), dry_run=False)

        assert result.interrupted
        assert result.chunks_committed == 1
        assert len(store.commits) == 1

    def test_creates_issued_after_batches(self, make_store, policy, rate_limiter):
        store = _seeded(make_store, 1)
        store.seed(COACHES, "u1", {"uid": "u1"})
        writes = _updates(1) + [
            PlannedWrite(COACHES, "u1", CorrectionSet.create_record({"uid": "u1"})),
            PlannedWrite(COACHES, "u2", CorrectionSet.create_record({"uid": "u2"})),
        ]
        result = BatchWriter(store, policy, rate_limiter=rate_limiter).write(writes, dry_run=False)

        assert result.ok
        assert result.created == 1
        assert result.skipped_existing == 1
        assert result.chunks_total == 3
        assert store.get_by_id(COACHES, "u2").data == {"uid": "u2"}

    def test_to_dict_reports_failure(self, make_store, policy, rate_limiter):
        policy = policy.model_copy(update={"commit_retries": 0})
        store = _seeded(make_store, 1, fail_on_commit=1)
        result = BatchWriter(store, policy, rate_limiter=rate_limiter).write(_updates(1), dry_run=False)

        data = result.to_dict()
        assert data["error"]["chunkIndex"] == 0
        assert data["error"]["paths"] == ["users/u000"]
        assert data["chunksCommitted"] == 0

    def test_unexpected_failure_stops_with_chunk_index(self, make_store, policy, rate_limiter):
        policy = policy.model_copy(update={"batch_size": 2})
        store = _seeded(make_store, 4)
        sleeps = _Sleeps()

        def denied(ops):
            raise PermissionError("403 Missing or insufficient permissions")

        store.commit_batch = denied
        result = BatchWriter(store, policy, rate_limiter=rate_limiter, sleep=sleeps).write(_updates(4), dry_run=False)

        assert result.error is not None
        assert result.error.chunk_index == 0
        assert result.error.paths == ["users/u000", "users/u001"]
        assert isinstance(result.error.cause, PermissionError)
        assert result.chunks_committed == 0
        assert sleeps.calls == []
