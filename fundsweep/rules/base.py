"""Rule base class and the per-record evaluation context.

Rules run in declared order against a RuleContext. Each rule reads the
progressively patched view of the record (so a later rule sees earlier
corrections), proposes field changes, marks the record for deletion, raises
issues or emits writes against other documents (derived entities).

A rule never writes to the store and never raises for bad data; a field it
cannot decide is blocked so later rules leave it alone.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..constants import ENTITY_PREFIX
from ..db.base import Record
from ..schemas.corrections import DELETE_FIELD, PlannedWrite
from ..schemas.issues import Issue, IssueKind, Severity, field_token, issue_code, reference_token
from ..schemas.policy import SanitizePolicy
from ..services.resolver import CrossReferenceResolver, get_path


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def same_value(a: Any, b: Any) -> bool:
    return type(a) is type(b) and a == b


class RuleContext:
    """
    Mutable evaluation state for one record.

    Attributes:
        record: The record as of the current evaluation pass (never modified)
        resolver: Reference snapshot for foreign key lookups
        policy: Active sanitize policy
        view: Record fields with the corrections so far applied
        updates: Minimal field changes relative to that record
        deleted: Whether any rule asked to delete the record
        issues: Findings raised so far
        derived: Writes targeting other documents
    """

    def __init__(self, record: Record, resolver: CrossReferenceResolver, policy: SanitizePolicy):
        self.record = record
        self.resolver = resolver
        self.policy = policy
        self.view: dict[str, Any] = copy.deepcopy(record.data)
        self.updates: dict[str, Any] = {}
        self.field_families: dict[str, str] = {}
        self.deleted = False
        self.delete_families: list[str] = []
        self.blocked: set[str] = set()
        self.issues: list[Issue] = []
        self.derived: list[PlannedWrite] = []
        self.family: str = ""
        self.rule_name: str = ""

    @property
    def collection(self) -> str:
        return self.record.collection

    @property
    def doc_id(self) -> str:
        return self.record.doc_id

    def get(self, field_name: str, default: Any = None) -> Any:
        value = get_path(self.view, field_name)
        return default if value is None else value

    def has(self, field_name: str) -> bool:
        return not is_blank(self.get(field_name))

    # ─── Corrections ─────────────────────────────────────────────────────────

    def set_field(self, field_name: str, value: Any) -> bool:
        """
        Propose a top-level field value. DELETE_FIELD removes the field.

        Returns:
            True if the view changed, False for blocked fields and no-ops
        """
        if field_name in self.blocked:
            return False

        original_present = field_name in self.record.data
        original = self.record.data.get(field_name)

        if value is DELETE_FIELD:
            if field_name not in self.view:
                return False
            del self.view[field_name]
            if original_present:
                self.updates[field_name] = DELETE_FIELD
                self.field_families[field_name] = self.family
            else:
                self.updates.pop(field_name, None)
                self.field_families.pop(field_name, None)
            return True

        if field_name in self.view and same_value(self.view[field_name], value):
            return False

        self.view[field_name] = value
        if original_present and same_value(original, value):
            self.updates.pop(field_name, None)
            self.field_families.pop(field_name, None)
        else:
            self.updates[field_name] = value
            self.field_families[field_name] = self.family
        return True

    def delete_field(self, field_name: str) -> bool:
        return self.set_field(field_name, DELETE_FIELD)

    def mark_delete(self):
        self.deleted = True
        if self.family not in self.delete_families:
            self.delete_families.append(self.family)

    def block(self, field_name: str):
        """Freeze a field for the rest of this record's evaluation."""
        self.blocked.add(field_name)

    def emit(self, write: PlannedWrite):
        if not write.correction.is_noop:
            if write.source is None:
                write.source = self.record.path
            self.derived.append(write)

    # ─── Issues ──────────────────────────────────────────────────────────────

    def flag(
        self,
        label: str,
        token: Optional[str],
        kind: IssueKind,
        message: str,
        severity: Severity = Severity.WARNING,
        detail: Optional[dict[str, Any]] = None,
    ) -> Issue:
        issue = Issue(
            collection=self.collection,
            record_id=self.doc_id,
            code=issue_code(self.collection, label, token),
            kind=kind,
            family=self.family,
            message=message,
            severity=severity,
            detail=detail,
        )
        self.issues.append(issue)
        return issue

    def flag_missing(self, field_name: str, severity: Severity = Severity.WARNING) -> Issue:
        return self.flag(
            "MISSING",
            field_token(field_name),
            IssueKind.MISSING_FIELD,
            f"{field_name} is missing",
            severity=severity,
            detail={"field": field_name},
        )

    def flag_invalid(self, field_name: str, value: Any, reason: str, severity: Severity = Severity.WARNING) -> Issue:
        return self.flag(
            "INVALID",
            field_token(field_name),
            IssueKind.INVALID_VALUE,
            f"{field_name} {reason}",
            severity=severity,
            detail={"field": field_name, "value": value},
        )

    def flag_ambiguous(self, field_name: str, candidates: dict[str, Any]) -> Issue:
        """Record an inference conflict and freeze the field."""
        self.block(field_name)
        return self.flag(
            "AMBIGUOUS",
            field_token(field_name),
            IssueKind.AMBIGUOUS_INFERENCE,
            f"{field_name} has conflicting candidates, left unset",
            detail={"field": field_name, "candidates": candidates},
        )

    def flag_orphan(self, field_name: str, target: str, value: Any, action: str) -> Issue:
        return self.flag(
            "ORPHAN",
            reference_token(field_name),
            IssueKind.ORPHAN_REFERENCE,
            f"{field_name} '{value}' does not resolve in {target}",
            detail={"field": field_name, "value": value, "target": target, "action": action},
        )

    def flag_org_mismatch(
        self, parent_collection: str, parent_id: str, parent_org: Any, severity: Severity = Severity.WARNING
    ) -> Issue:
        return self.flag(
            "ORG_MISMATCH",
            ENTITY_PREFIX.get(parent_collection, parent_collection.upper()),
            IssueKind.ORG_MISMATCH,
            f"orgId '{self.get('orgId')}' differs from {parent_collection}/{parent_id} orgId '{parent_org}'",
            severity=severity,
            detail={"orgId": self.get("orgId"), "parent": f"{parent_collection}/{parent_id}", "parentOrgId": parent_org},
        )

    # ─── Rollback for failing rules ──────────────────────────────────────────

    def checkpoint(self) -> tuple:
        return (
            copy.deepcopy(self.view),
            dict(self.updates),
            dict(self.field_families),
            self.deleted,
            list(self.delete_families),
            set(self.blocked),
            len(self.issues),
            len(self.derived),
        )

    def restore(self, state: tuple):
        view, updates, families, deleted, delete_families, blocked, n_issues, n_derived = state
        self.view = view
        self.updates = updates
        self.field_families = families
        self.deleted = deleted
        self.delete_families = delete_families
        self.blocked = blocked
        del self.issues[n_issues:]
        del self.derived[n_derived:]


class Rule(ABC):
    """
    A single correction or check within a rule family.

    Subclasses set `family` (a FeatureFlags name, which also switches the
    rule on or off) and implement apply().
    """

    family: str = ""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def apply(self, ctx: RuleContext) -> None:
        """Inspect ctx.view and propose corrections on ctx."""
        ...

    def __repr__(self) -> str:
        return f"{self.name}({self.family})"
