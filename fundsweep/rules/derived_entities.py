"""
Derived entities: documents fully computable from another collection.

- coaches/{uid} is rebuilt from every users/{uid} with role "coach"
- coaches whose uid is not a usable string are deleted
- campaigns/{cid}/public_donors/{donationId} is created once per paid donation

Rebuilds write only the fields that differ, so a second run is a no-op.
Creates go through create-if-absent; an existing document is success.
"""

from typing import Any

from ..constants import (
    ANONYMOUS_DONOR_NAME,
    CAMPAIGNS,
    COACHES,
    PAID_STATUS,
    PUBLIC_DONORS,
    ROLE_COACH,
    USERS,
)
from ..schemas.corrections import SERVER_TIMESTAMP, CorrectionSet, PlannedWrite
from ..schemas.issues import IssueKind, Severity
from .base import Rule, RuleContext, is_blank, same_value


def coach_fields(user_id: str, user: dict[str, Any]) -> dict[str, Any]:
    return {
        "uid": user_id,
        "userId": user_id,
        "orgId": user.get("orgId"),
        "teamId": user.get("teamId"),
        "role": ROLE_COACH,
    }


class RebuildCoachFromUser(Rule):
    """Evaluated on users; emits writes against coaches."""

    family = "derived_entities"

    def apply(self, ctx: RuleContext) -> None:
        if ctx.deleted or ctx.view.get("role") != ROLE_COACH:
            return
        if not ctx.has("orgId") or not ctx.has("teamId"):
            ctx.flag(
                "COACH",
                "UNASSIGNED",
                IssueKind.MISSING_FIELD,
                "coach user has no orgId/teamId, coach record not rebuilt",
                detail={"orgId": ctx.view.get("orgId"), "teamId": ctx.view.get("teamId")},
            )
            return

        desired = coach_fields(ctx.doc_id, ctx.view)
        existing = ctx.resolver.resolve(COACHES, ctx.doc_id)
        if existing is None:
            ctx.emit(
                PlannedWrite(
                    collection=COACHES,
                    doc_id=ctx.doc_id,
                    correction=CorrectionSet.create_record({**desired, "createdAt": SERVER_TIMESTAMP}),
                    families=[self.family],
                )
            )
            return

        diff = {k: v for k, v in desired.items() if not same_value(existing.get(k), v)}
        if diff:
            ctx.emit(
                PlannedWrite(
                    collection=COACHES,
                    doc_id=ctx.doc_id,
                    correction=CorrectionSet.update_fields(diff),
                    before={k: existing.get(k) for k in diff},
                    families=[self.family],
                )
            )


class ValidateCoach(Rule):
    """Evaluated on coaches: invalid uid -> delete; stale source user -> flag."""

    family = "derived_entities"

    def apply(self, ctx: RuleContext) -> None:
        uid = ctx.view.get("uid")
        if not isinstance(uid, str) or is_blank(uid):
            ctx.flag_invalid("uid", uid, "is not a non-empty string, deleting coach", severity=Severity.ERROR)
            ctx.mark_delete()
            return
        user = ctx.resolver.resolve(USERS, uid)
        if user is not None and user.get("role") != ROLE_COACH:
            ctx.flag(
                "STALE",
                "USER",
                IssueKind.POLICY,
                f"source user '{uid}' no longer has role coach",
                detail={"uid": uid, "role": user.get("role")},
            )


def public_donor_fields(donation: dict[str, Any], create_time: Any = None) -> dict[str, Any]:
    name = donation.get("donorName")
    display_name = name.strip() if isinstance(name, str) and name.strip() else ANONYMOUS_DONOR_NAME
    created_at = donation.get("createdAt") or create_time or SERVER_TIMESTAMP
    return {
        "displayName": display_name,
        "amountCents": donation.get("amount"),
        "createdAt": created_at,
        "isAnonymous": False,
        "athleteId": donation.get("athleteId") or None,
    }


class MaterializePublicDonor(Rule):
    """Evaluated on donations; emits create-if-absent public donor entries."""

    family = "public_donors"

    def apply(self, ctx: RuleContext) -> None:
        if ctx.deleted or ctx.view.get("status") != PAID_STATUS:
            return
        campaign_id = ctx.view.get("campaignId")
        if not ctx.resolver.exists(CAMPAIGNS, campaign_id):
            return
        amount = ctx.view.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            return

        collection = f"{CAMPAIGNS}/{campaign_id}/{PUBLIC_DONORS}"
        if ctx.resolver.group_exists(PUBLIC_DONORS, f"{collection}/{ctx.doc_id}"):
            return
        ctx.emit(
            PlannedWrite(
                collection=collection,
                doc_id=ctx.doc_id,
                correction=CorrectionSet.create_record(public_donor_fields(ctx.view, ctx.record.create_time)),
                families=[self.family],
            )
        )
