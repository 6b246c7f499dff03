"""
Type/format normalization and record-level validation.

Covers the cleanups the old sanitize scripts did field by field:
- legacy field promotion (email -> donorEmail, donorFullName -> donorName)
- whitespace trimming, email lower-casing and syntax checks
- uid self-backfill, role validation, donor-role user policy
- team name/code checks, including duplicate codes within an org
- blob: URL removal and createdAt backfill (own families)
"""

import re
from typing import Any, Optional

from ..constants import BLOB_URL_PREFIX, ROLE_DONOR, TEAMS, VALID_ROLES
from ..schemas.corrections import SERVER_TIMESTAMP
from ..schemas.issues import IssueKind, Severity
from ..schemas.policy import DonorUserAction
from .base import Rule, RuleContext, is_blank

# local@domain.tld, no whitespace
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_PATTERN.match(value))


class PromoteLegacyFields(Rule):
    """Fill a canonical field from the first non-blank legacy alternative.

    Legacy fields are left in place; a LEGACY_VALUE issue notes the promotion
    so the app code still writing them can be found.
    """

    family = "normalize"

    def __init__(self, target: str, sources: list[str]):
        self.target = target
        self.sources = sources

    def apply(self, ctx: RuleContext) -> None:
        if ctx.has(self.target):
            return
        for source in self.sources:
            value = ctx.get(source)
            if isinstance(value, str) and value.strip():
                if ctx.set_field(self.target, value):
                    ctx.flag(
                        "LEGACY",
                        self.target.upper() + "_FIELD",
                        IssueKind.LEGACY_VALUE,
                        f"{self.target} promoted from legacy field {source}",
                        severity=Severity.INFO,
                        detail={"from": source, "to": self.target},
                    )
                return


class TrimStrings(Rule):
    family = "normalize"

    def __init__(self, fields: list[str]):
        self.fields = fields

    def apply(self, ctx: RuleContext) -> None:
        for field_name in self.fields:
            value = ctx.view.get(field_name)
            if isinstance(value, str) and value != value.strip():
                ctx.set_field(field_name, value.strip())


class NormalizeEmail(Rule):
    """Lower-case and validate an email field. Invalid values are flagged, never dropped."""

    family = "normalize"

    def __init__(self, field_name: str, required: bool = False):
        self.field_name = field_name
        self.required = required

    def apply(self, ctx: RuleContext) -> None:
        value = ctx.view.get(self.field_name)
        if is_blank(value):
            if self.required:
                ctx.flag_missing(self.field_name)
            return
        if not isinstance(value, str):
            ctx.flag_invalid(self.field_name, value, "is not a string")
            return
        normalized = value.strip().lower()
        ctx.set_field(self.field_name, normalized)
        if not is_valid_email(normalized):
            ctx.flag_invalid(self.field_name, normalized, "is not a valid email address")


class RequireFields(Rule):
    """Flag fields that must be present but have no safe default."""

    family = "normalize"

    def __init__(self, fields: list[str], severity: Severity = Severity.WARNING):
        self.fields = fields
        self.severity = severity

    def apply(self, ctx: RuleContext) -> None:
        for field_name in self.fields:
            if not ctx.has(field_name):
                ctx.flag_missing(field_name, severity=self.severity)


class RequireArrays(Rule):
    family = "normalize"

    def __init__(self, fields: list[str]):
        self.fields = fields

    def apply(self, ctx: RuleContext) -> None:
        for field_name in self.fields:
            value = ctx.view.get(field_name)
            if value is not None and not isinstance(value, list):
                ctx.flag_invalid(field_name, type(value).__name__, "is not an array")


class BackfillUid(Rule):
    """users/{id}.uid must equal the document id."""

    family = "normalize"

    def apply(self, ctx: RuleContext) -> None:
        uid = ctx.view.get("uid")
        if is_blank(uid):
            ctx.set_field("uid", ctx.doc_id)
        elif uid != ctx.doc_id:
            ctx.flag_invalid("uid", uid, f"does not match document id '{ctx.doc_id}'")


class ValidateRole(Rule):
    """Flag missing or unknown roles and apply the donor-user policy.

    Donor accounts are not app users: the policy either flags them or deletes
    the user document.
    """

    family = "normalize"

    def apply(self, ctx: RuleContext) -> None:
        role = ctx.view.get("role")
        if is_blank(role):
            ctx.flag_missing("role")
            return
        if role not in VALID_ROLES:
            ctx.flag_invalid("role", role, f"is not one of {sorted(VALID_ROLES)}")
            return
        if role == ROLE_DONOR:
            action = ctx.policy.donor_users
            ctx.flag(
                "DONOR",
                "ROLE",
                IssueKind.POLICY,
                "user has role 'donor'" + (", deleting" if action == DonorUserAction.DELETE else ""),
                detail={"action": action.value},
            )
            if action == DonorUserAction.DELETE:
                ctx.mark_delete()


class TeamCodeUnique(Rule):
    """Team codes are unique per org (case-insensitive). Later ids are flagged."""

    family = "normalize"

    def apply(self, ctx: RuleContext) -> None:
        code = ctx.view.get("code")
        org_id = ctx.view.get("orgId")
        if is_blank(code) or is_blank(org_id):
            return
        key = str(code).strip().lower()
        for other_id, other in ctx.resolver.find_by(TEAMS, "orgId", org_id):
            if other_id >= ctx.doc_id:
                continue
            other_code = other.get("code")
            if not is_blank(other_code) and str(other_code).strip().lower() == key:
                ctx.flag(
                    "DUPLICATE",
                    "CODE",
                    IssueKind.INVALID_VALUE,
                    f"team code '{code}' already used by {TEAMS}/{other_id} in org '{org_id}'",
                    detail={"orgId": org_id, "code": code, "otherTeamId": other_id},
                )
                return


class CampaignIsPublic(Rule):
    """Default campaigns.isPublic when absent (opt-in)."""

    family = "campaign_is_public"

    def apply(self, ctx: RuleContext) -> None:
        if ctx.view.get("isPublic") is None:
            ctx.set_field("isPublic", ctx.policy.campaign_is_public_default)


class RemoveBlobUrls(Rule):
    """Drop top-level string fields holding session-local blob: URLs."""

    family = "blob_cleanup"

    def apply(self, ctx: RuleContext) -> None:
        for field_name, value in list(ctx.view.items()):
            if isinstance(value, str) and value.startswith(BLOB_URL_PREFIX):
                ctx.delete_field(field_name)


class BackfillCreatedAt(Rule):
    """createdAt from the document's store creation time (server time if unknown)."""

    family = "created_at_backfill"

    def __init__(self, field_name: str = "createdAt"):
        self.field_name = field_name

    def apply(self, ctx: RuleContext) -> None:
        if ctx.view.get(self.field_name) is not None:
            return
        create_time: Optional[Any] = ctx.record.create_time
        ctx.set_field(self.field_name, create_time if create_time is not None else SERVER_TIMESTAMP)
