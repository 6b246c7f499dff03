"""
Write planner: folds the writes of every evaluation pass into one final
write per document.

Evaluation repeats until a pass plans nothing, so a document can be touched
by several passes (an orgId derived in pass one, the same record's teamId
in pass two). The planner compares each touched document's state before the
first pass with its state after the last one and emits a single write:

- present before, gone after      -> DeleteRecord (before = whole document)
- absent before, present after    -> CreateRecord (create-if-absent)
- present in both                 -> UpdateFields with the changed fields only
- unchanged overall               -> nothing
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from ..constants import COLLECTION_ORDER
from ..rules.base import same_value
from ..rules.registry import FAMILY_ORDER
from ..schemas.corrections import DELETE_FIELD, CorrectionSet, PlannedWrite
from .resolver import CrossReferenceResolver


@dataclass
class _Touch:
    collection: str
    doc_id: str
    families: set[str] = field(default_factory=set)
    source: Optional[str] = None


def _collection_rank(collection: str) -> int:
    # sub-collections after every top-level collection
    if collection in COLLECTION_ORDER:
        return COLLECTION_ORDER.index(collection)
    return len(COLLECTION_ORDER)


def field_diff(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    """Top-level fields that differ; removed fields map to DELETE_FIELD."""
    changes = {k: v for k, v in after.items() if k not in before or not same_value(before[k], v)}
    changes.update({k: DELETE_FIELD for k in before if k not in after})
    return changes


class WritePlanner:
    """Tracks which documents the passes touched and plans their net writes."""

    def __init__(self, original: CrossReferenceResolver):
        self.original = original
        self._touched: dict[str, _Touch] = {}

    def track(self, write: PlannedWrite):
        touch = self._touched.setdefault(write.path, _Touch(write.collection, write.doc_id))
        touch.families.update(write.families)
        if write.source and touch.source is None:
            touch.source = write.source

    def track_all(self, writes):
        for write in writes:
            self.track(write)

    @property
    def touched(self) -> int:
        return len(self._touched)

    def plan(self, current: CrossReferenceResolver) -> list[PlannedWrite]:
        """
        Net writes relative to the original snapshot.

        Returns:
            Writes ordered by collection evaluation order, then document id
        """
        planned: list[PlannedWrite] = []
        ordered = sorted(
            self._touched.values(),
            key=lambda t: (_collection_rank(t.collection), t.collection, t.doc_id),
        )
        for touch in ordered:
            before = self.original.document(touch.collection, touch.doc_id)
            after = current.document(touch.collection, touch.doc_id)
            families = [f for f in FAMILY_ORDER if f in touch.families]

            if before is not None and after is None:
                correction = CorrectionSet.delete_record()
                before_detail = dict(before)
            elif before is None and after is not None:
                correction = CorrectionSet.create_record(after)
                before_detail = {}
            elif before is not None:
                changes = field_diff(before, after)
                if not changes:
                    continue
                correction = CorrectionSet.update_fields(changes)
                before_detail = {k: before.get(k) for k in changes}
            else:
                continue

            planned.append(
                PlannedWrite(
                    collection=touch.collection,
                    doc_id=touch.doc_id,
                    correction=correction,
                    before=before_detail,
                    families=families,
                    source=touch.source,
                )
            )
        return planned
