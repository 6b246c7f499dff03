"""Rule registry: the declarative {collection -> ordered rules} table.

Each entry replaces one of the old per-collection sanitize/fix scripts.
Rules are evaluated in the order listed; the policy's feature flags switch
whole families on or off.

Usage:
    from fundsweep.rules.registry import rules_for

    for rule in rules_for("donations", policy):
        rule.apply(ctx)
"""

from ..constants import (
    ATHLETES,
    CAMPAIGN_ATHLETES,
    CAMPAIGNS,
    COACHES,
    DONATIONS,
    DONORS,
    ROLE_ATHLETE,
    ROLE_SUPER_ADMIN,
    TEAMS,
    USERS,
)
from ..schemas.policy import SanitizePolicy
from .aggregates import RebuildDonorAggregates
from .base import Rule
from .currency import NormalizeAmount
from .default_fill import DefaultFill
from .derive_parent import BackfillFromChildren, DeriveFromParents, OrgConsistency, ParentLink
from .derived_entities import MaterializePublicDonor, RebuildCoachFromUser, ValidateCoach
from .normalize import (
    BackfillCreatedAt,
    BackfillUid,
    CampaignIsPublic,
    NormalizeEmail,
    PromoteLegacyFields,
    RemoveBlobUrls,
    RequireArrays,
    RequireFields,
    TeamCodeUnique,
    TrimStrings,
    ValidateRole,
)
from .orphans import OrphanReference

# Families in evaluation order (names match FeatureFlags)
FAMILY_ORDER = [
    "blob_cleanup",
    "normalize",
    "created_at_backfill",
    "derive_from_parent",
    "default_fill",
    "currency",
    "orphans",
    "derived_entities",
    "campaign_is_public",
    "public_donors",
    "donor_aggregates",
]

# orgId parents per collection
ORG_PARENTS = {
    TEAMS: [],
    CAMPAIGNS: [ParentLink("teamId", TEAMS), ParentLink("teamIds", TEAMS)],
    USERS: [ParentLink("teamId", TEAMS), ParentLink("athleteId", ATHLETES)],
    ATHLETES: [ParentLink("teamId", TEAMS), ParentLink("userId", USERS)],
    COACHES: [ParentLink("userId", USERS), ParentLink("uid", USERS), ParentLink("teamId", TEAMS)],
    CAMPAIGN_ATHLETES: [ParentLink("campaignId", CAMPAIGNS), ParentLink("athleteId", ATHLETES)],
    DONATIONS: [
        ParentLink("campaignId", CAMPAIGNS),
        ParentLink("athleteId", ATHLETES),
        ParentLink("teamId", TEAMS),
        ParentLink("userId", USERS),
    ],
    DONORS: [ParentLink("userId", USERS)],
}


def _build_table() -> dict[str, list[Rule]]:
    return {
        TEAMS: [
            RemoveBlobUrls(),
            TrimStrings(["name", "code"]),
            RequireFields(["name"]),
            RequireArrays(["coachIds", "athleteIds"]),
            TeamCodeUnique(),
            DefaultFill(["orgId"]),
        ],
        CAMPAIGNS: [
            RemoveBlobUrls(),
            TrimStrings(["name"]),
            DeriveFromParents("orgId", ORG_PARENTS[CAMPAIGNS]),
            OrgConsistency(ORG_PARENTS[CAMPAIGNS]),
            DefaultFill(["orgId"]),
            OrphanReference("teamId", TEAMS),
            CampaignIsPublic(),
        ],
        USERS: [
            RemoveBlobUrls(),
            BackfillUid(),
            TrimStrings(["displayName", "email"]),
            NormalizeEmail("email"),
            ValidateRole(),
            BackfillCreatedAt(),
            BackfillFromChildren("athleteId", ATHLETES, "userId", role=ROLE_ATHLETE),
            DeriveFromParents("orgId", ORG_PARENTS[USERS]),
            DeriveFromParents("teamId", [ParentLink("athleteId", ATHLETES)]),
            OrgConsistency(ORG_PARENTS[USERS]),
            DefaultFill(["orgId", "teamId"], exempt_roles={ROLE_SUPER_ADMIN}),
            OrphanReference("athleteId", ATHLETES),
            OrphanReference("teamId", TEAMS),
            RebuildCoachFromUser(),
        ],
        ATHLETES: [
            RemoveBlobUrls(),
            TrimStrings(["name"]),
            DeriveFromParents("orgId", ORG_PARENTS[ATHLETES]),
            DeriveFromParents("teamId", [ParentLink("userId", USERS)]),
            OrgConsistency(ORG_PARENTS[ATHLETES]),
            DefaultFill(["orgId", "teamId"]),
            OrphanReference("teamId", TEAMS),
            OrphanReference("userId", USERS),
        ],
        COACHES: [
            RemoveBlobUrls(),
            ValidateCoach(),
            DeriveFromParents("orgId", ORG_PARENTS[COACHES]),
            DeriveFromParents("teamId", [ParentLink("userId", USERS), ParentLink("uid", USERS)]),
            OrgConsistency(ORG_PARENTS[COACHES]),
            DefaultFill(["orgId", "teamId"]),
            OrphanReference("userId", USERS),
        ],
        CAMPAIGN_ATHLETES: [
            RemoveBlobUrls(),
            DeriveFromParents("orgId", ORG_PARENTS[CAMPAIGN_ATHLETES]),
            DeriveFromParents("userId", [ParentLink("athleteId", ATHLETES)]),
            OrgConsistency(ORG_PARENTS[CAMPAIGN_ATHLETES]),
            DefaultFill(["orgId"]),
            OrphanReference("campaignId", CAMPAIGNS, required=True),
            OrphanReference("athleteId", ATHLETES, required=True),
        ],
        DONATIONS: [
            RemoveBlobUrls(),
            PromoteLegacyFields("donorEmail", ["email", "donor.email"]),
            PromoteLegacyFields("donorName", ["donorFullName", "donor.name", "donor.fullName"]),
            TrimStrings(["donorName", "donorEmail"]),
            NormalizeEmail("donorEmail"),
            BackfillCreatedAt(),
            DeriveFromParents("orgId", ORG_PARENTS[DONATIONS]),
            DeriveFromParents(
                "teamId",
                [ParentLink("campaignId", CAMPAIGNS), ParentLink("athleteId", ATHLETES)],
            ),
            OrgConsistency(ORG_PARENTS[DONATIONS]),
            DefaultFill(["orgId", "campaignId"]),
            NormalizeAmount(),
            OrphanReference("campaignId", CAMPAIGNS),
            OrphanReference("athleteId", ATHLETES),
            OrphanReference("teamId", TEAMS),
            MaterializePublicDonor(),
        ],
        DONORS: [
            RemoveBlobUrls(),
            TrimStrings(["name", "email"]),
            NormalizeEmail("email"),
            DeriveFromParents("orgId", ORG_PARENTS[DONORS]),
            OrgConsistency(ORG_PARENTS[DONORS]),
            DefaultFill(["orgId"]),
            OrphanReference("userId", USERS),
            RebuildDonorAggregates(),
        ],
    }


RULE_TABLE: dict[str, list[Rule]] = _build_table()


class _MissingScope(RequireFields):
    """Missing scope fields are reported when default-fill is disabled."""

    family = "default_fill"

    def apply(self, ctx) -> None:
        if ctx.collection == USERS and ctx.view.get("role") == ROLE_SUPER_ADMIN:
            return
        for field_name in self.fields:
            if field_name not in ctx.blocked and not ctx.has(field_name):
                ctx.flag_missing(field_name, severity=self.severity)


# Reported instead of filled when default_fill is off
_REQUIRED_SCOPE = {
    TEAMS: ["orgId"],
    CAMPAIGNS: ["orgId"],
    USERS: ["orgId"],
    ATHLETES: ["orgId", "teamId"],
    COACHES: ["orgId", "teamId"],
    CAMPAIGN_ATHLETES: ["orgId"],
    DONATIONS: ["orgId", "campaignId"],
    DONORS: ["orgId"],
}


def _family_rank(rule: Rule) -> int:
    return FAMILY_ORDER.index(rule.family)


def rules_for(collection: str, policy: SanitizePolicy) -> list[Rule]:
    """
    Enabled rules for a collection, in evaluation order.

    Rules run grouped by family (FAMILY_ORDER); the table order is kept
    within a family.
    """
    features = policy.features
    rules = [r for r in RULE_TABLE.get(collection, []) if getattr(features, r.family)]
    if not features.default_fill and collection in _REQUIRED_SCOPE:
        rules.append(_MissingScope(_REQUIRED_SCOPE[collection]))
    return sorted(rules, key=_family_rank)
