"""Correction types produced by the rule engine and consumed by the batch writer.

A CorrectionSet is the per-record verdict (no action, field updates, record
deletion, or create-if-absent). A PlannedWrite pins a CorrectionSet to a
document path together with the before/after detail shown in reports.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


class _FieldMarker:
    """Library-neutral field sentinel, translated by each store adapter."""

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.name}>"

    # markers are compared by identity
    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


DELETE_FIELD = _FieldMarker("DELETE_FIELD")
SERVER_TIMESTAMP = _FieldMarker("SERVER_TIMESTAMP")


class CorrectionKind(str, Enum):
    """What a correction does to its target document."""

    NO_ACTION = "no_action"
    UPDATE_FIELDS = "update_fields"
    DELETE_RECORD = "delete_record"
    CREATE_RECORD = "create_record"  # create-if-absent, existing doc is success


@dataclass(frozen=True)
class CorrectionSet:
    kind: CorrectionKind
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def no_action(cls) -> "CorrectionSet":
        return cls(CorrectionKind.NO_ACTION)

    @classmethod
    def update_fields(cls, fields: dict[str, Any]) -> "CorrectionSet":
        if not fields:
            return cls.no_action()
        return cls(CorrectionKind.UPDATE_FIELDS, dict(fields))

    @classmethod
    def delete_record(cls) -> "CorrectionSet":
        return cls(CorrectionKind.DELETE_RECORD)

    @classmethod
    def create_record(cls, fields: dict[str, Any]) -> "CorrectionSet":
        return cls(CorrectionKind.CREATE_RECORD, dict(fields))

    @property
    def is_noop(self) -> bool:
        return self.kind == CorrectionKind.NO_ACTION


def render_value(value: Any) -> Any:
    """Render a field value for report output (markers and timestamps as text)."""
    if isinstance(value, _FieldMarker):
        return repr(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v) for v in value]
    return value


@dataclass
class PlannedWrite:
    """A single intended store operation with full before/after detail.

    Attributes:
        collection: Collection path (may be a sub-collection path)
        doc_id: Target document id
        correction: The correction to apply
        before: Prior values of the touched fields (whole document for deletes)
        families: Rule families that contributed, in declaration order
        source: "collection/doc_id" of the record whose evaluation produced
            this write, when it differs from the target (derived entities)
    """

    collection: str
    doc_id: str
    correction: CorrectionSet
    before: dict[str, Any] = field(default_factory=dict)
    families: list[str] = field(default_factory=list)
    source: Optional[str] = None

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"

    @property
    def kind(self) -> CorrectionKind:
        return self.correction.kind

    @property
    def after(self) -> dict[str, Any]:
        if self.kind == CorrectionKind.DELETE_RECORD:
            return {}
        return dict(self.correction.fields)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "path": self.path,
            "op": self.kind.value,
            "before": render_value(self.before),
            "after": render_value(self.after),
            "families": list(self.families),
        }
        if self.source:
            result["source"] = self.source
        return result
