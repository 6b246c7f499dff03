"""Shared fixtures for fundsweep tests.

Everything runs against InMemoryRecordStore; no Firestore project needed.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to path so tests can import fundsweep without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from fundsweep.config import RunSettings
from fundsweep.db.memory_store import InMemoryRecordStore
from fundsweep.schemas.policy import SanitizePolicy
from fundsweep.services.resolver import CrossReferenceResolver
from fundsweep.utils.rate_limiter import GlobalRateLimiter
from fundsweep.utils.worker_pool import WorkerPool

CREATED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    """Default policy with commit pacing and backoff switched off."""
    return SanitizePolicy(min_commit_interval_seconds=0, commit_backoff_seconds=0, max_workers=2)


@pytest.fixture
def make_store():
    """Factory for an InMemoryRecordStore seeded with a fixed create time."""

    def _make(collections=None, **kwargs):
        store = InMemoryRecordStore(project_id="test-project", **kwargs)
        for collection, docs in (collections or {}).items():
            for doc_id, fields in docs.items():
                store.seed(collection, doc_id, fields, create_time=CREATED)
        return store

    return _make


@pytest.fixture
def make_resolver():
    """Factory for a resolver preloaded with {collection: {id: fields}}."""
    from fundsweep.db.base import Record

    def _make(collections=None):
        resolver = CrossReferenceResolver(pool=WorkerPool(max_workers=2))
        for collection, docs in (collections or {}).items():
            resolver.add(
                collection,
                [Record(collection, doc_id, fields, create_time=CREATED) for doc_id, fields in docs.items()],
            )
        return resolver

    return _make


@pytest.fixture
def settings(tmp_path):
    return RunSettings(project_id="test-project", report_dir=tmp_path / "reports")


@pytest.fixture
def rate_limiter():
    return GlobalRateLimiter()
