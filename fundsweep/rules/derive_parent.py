"""
Derive-from-parent inference and cross-entity org consistency.

A scoped field (orgId, teamId, userId) that is absent, or still holds its
sentinel placeholder, is filled only when every parent reachable through the
record's foreign keys agrees on one value. Disagreeing parents produce a
single AMBIGUOUS issue and the field is blocked for the rest of the record.
A present orgId that differs from parents which all agree is realigned.
"""

from dataclasses import dataclass
from typing import Any, Optional

from ..constants import ENTITY_PREFIX, ROLE_SUPER_ADMIN, USERS
from ..schemas.issues import IssueKind, Severity
from .base import Rule, RuleContext, is_blank


@dataclass(frozen=True)
class ParentLink:
    """Foreign key on the record -> parent collection (-> field on the parent)."""

    foreign_key: str
    collection: str
    parent_field: Optional[str] = None  # defaults to the derived field


def _fk_values(value: Any) -> list[str]:
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str) and v]
    if isinstance(value, str) and value:
        return [value]
    return []


def is_placeholder(ctx: RuleContext, field_name: str, value: Any) -> bool:
    return is_blank(value) or value == ctx.policy.sentinels.for_field(field_name)


class DeriveFromParents(Rule):
    family = "derive_from_parent"

    def __init__(self, field_name: str, links: list[ParentLink]):
        self.field_name = field_name
        self.links = links

    def candidates(self, ctx: RuleContext) -> dict[str, Any]:
        """{"parent/path": value} for every usable parent value, in link order."""
        sentinels = ctx.policy.sentinels.values()
        found: dict[str, Any] = {}
        for link in self.links:
            parent_field = link.parent_field or self.field_name
            for parent_id in _fk_values(ctx.get(link.foreign_key)):
                if parent_id in sentinels:
                    continue
                parent = ctx.resolver.resolve(link.collection, parent_id)
                if parent is None:
                    continue
                value = parent.get(parent_field)
                if is_blank(value) or value in sentinels:
                    continue
                found[f"{link.collection}/{parent_id}"] = value
        return found

    def apply(self, ctx: RuleContext) -> None:
        if not is_placeholder(ctx, self.field_name, ctx.view.get(self.field_name)):
            return
        found = self.candidates(ctx)
        distinct = []
        for value in found.values():
            if value not in distinct:
                distinct.append(value)
        if len(distinct) == 1:
            ctx.set_field(self.field_name, distinct[0])
        elif len(distinct) > 1:
            ctx.flag_ambiguous(self.field_name, found)


class BackfillFromChildren(Rule):
    """
    Fill a link field from the unique child pointing back at this record.

    Used for users.athleteId: the athlete whose userId is the user. Also
    flags links that point at a child owned by someone else.
    """

    family = "derive_from_parent"

    def __init__(self, field_name: str, child_collection: str, back_reference: str, role: Optional[str] = None):
        self.field_name = field_name
        self.child_collection = child_collection
        self.back_reference = back_reference
        self.role = role

    def apply(self, ctx: RuleContext) -> None:
        if self.role is not None and ctx.view.get("role") != self.role:
            return

        current = ctx.view.get(self.field_name)
        if not is_blank(current):
            child = ctx.resolver.resolve(self.child_collection, current)
            owner = child.get(self.back_reference) if child else None
            if not is_blank(owner) and owner != ctx.doc_id:
                ctx.flag(
                    "LINK_MISMATCH",
                    ENTITY_PREFIX.get(self.child_collection, self.child_collection.upper()),
                    IssueKind.INVALID_VALUE,
                    f"{self.field_name} '{current}' belongs to '{owner}'",
                    detail={"field": self.field_name, "value": current, "owner": owner},
                )
            return

        matches = [child_id for child_id, _ in ctx.resolver.find_by(self.child_collection, self.back_reference, ctx.doc_id)]
        if len(matches) == 1:
            ctx.set_field(self.field_name, matches[0])
        elif len(matches) > 1:
            ctx.flag_ambiguous(self.field_name, {f"{self.child_collection}/{m}": m for m in matches})
        else:
            ctx.flag_missing(self.field_name, severity=Severity.INFO)


class OrgConsistency(Rule):
    """
    Align a record's orgId with the orgId of its resolvable parents.

    When every parent agrees on one orgId, a different value on the record is
    rewritten and the mismatch reported as INFO. Parents that disagree with
    each other leave the field untouched: each mismatch is flagged and the
    field is blocked. super-admin users are cross-tenant, so they are exempt
    as records and as parents.
    """

    family = "derive_from_parent"

    def __init__(self, links: list[ParentLink]):
        self.links = links

    def parent_orgs(self, ctx: RuleContext) -> list[tuple[str, str, Any]]:
        """(collection, parent id, orgId) for every parent with a usable orgId."""
        sentinels = ctx.policy.sentinels.values()
        seen: set[str] = set()
        found = []
        for link in self.links:
            for parent_id in _fk_values(ctx.get(link.foreign_key)):
                path = f"{link.collection}/{parent_id}"
                if path in seen:
                    continue
                seen.add(path)
                parent = ctx.resolver.resolve(link.collection, parent_id)
                if parent is None:
                    continue
                if link.collection == USERS and parent.get("role") == ROLE_SUPER_ADMIN:
                    continue
                parent_org = parent.get("orgId")
                if is_blank(parent_org) or parent_org in sentinels:
                    continue
                found.append((link.collection, parent_id, parent_org))
        return found

    def apply(self, ctx: RuleContext) -> None:
        if ctx.collection == USERS and ctx.view.get("role") == ROLE_SUPER_ADMIN:
            return
        org_id = ctx.view.get("orgId")
        if is_placeholder(ctx, "orgId", org_id):
            return
        parents = self.parent_orgs(ctx)
        mismatched = [p for p in parents if p[2] != org_id]
        if not mismatched:
            return

        distinct = {p[2] for p in parents}
        if len(distinct) == 1 and "orgId" not in ctx.blocked:
            for collection, parent_id, parent_org in mismatched:
                ctx.flag_org_mismatch(collection, parent_id, parent_org, severity=Severity.INFO)
            ctx.set_field("orgId", mismatched[0][2])
            return

        for collection, parent_id, parent_org in mismatched:
            ctx.flag_org_mismatch(collection, parent_id, parent_org)
        ctx.block("orgId")
