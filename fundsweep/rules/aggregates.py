"""Donor aggregate rebuild from the donations snapshot."""

from typing import Any, Iterable

from ..constants import DONATIONS
from ..utils.timestamps import latest, to_datetime
from .base import Rule, RuleContext
from .currency import is_number

# where donations have recorded the donor over time
DONOR_KEYS = ("donorId", "donor.id", "donor.uid")


def donations_for(ctx: RuleContext, donor_id: str) -> list[dict[str, Any]]:
    seen: dict[str, dict[str, Any]] = {}
    for key in DONOR_KEYS:
        for donation_id, donation in ctx.resolver.find_by(DONATIONS, key, donor_id):
            seen.setdefault(donation_id, donation)
    return [seen[k] for k in sorted(seen)]


def total_cents(donations: Iterable[dict[str, Any]]) -> int:
    return sum(int(round(d["amount"])) for d in donations if is_number(d.get("amount")) and d["amount"] >= 0)


class RebuildDonorAggregates(Rule):
    """
    totalDonations and lastDonationAt recomputed from every donation of the donor.

    Written only when the computed value differs from the stored one;
    lastDonationAt is left alone when no donation has a usable timestamp.
    """

    family = "donor_aggregates"

    def apply(self, ctx: RuleContext) -> None:
        if ctx.deleted:
            return
        donations = donations_for(ctx, ctx.doc_id)

        total = total_cents(donations)
        ctx.set_field("totalDonations", total)

        last = latest(d.get("createdAt") for d in donations)
        if last is not None and to_datetime(ctx.view.get("lastDonationAt")) != last:
            ctx.set_field("lastDonationAt", last)
