"""Default-fill: assign the configured sentinel to still-missing scope fields."""

from typing import Optional

from .base import Rule, RuleContext


class DefaultFill(Rule):
    """
    Fill orgId/teamId/campaignId with the policy sentinel when absent.

    Runs after derive_from_parent, so it only fires when nothing better was
    inferable. Fields blocked by an ambiguous inference are left unset.
    """

    family = "default_fill"

    def __init__(self, fields: list[str], exempt_roles: Optional[set[str]] = None):
        self.fields = fields
        self.exempt_roles = exempt_roles or set()

    def apply(self, ctx: RuleContext) -> None:
        if ctx.view.get("role") in self.exempt_roles:
            return
        for field_name in self.fields:
            if field_name in ctx.blocked or ctx.has(field_name):
                continue
            sentinel = ctx.policy.sentinels.for_field(field_name)
            if sentinel is None:
                raise ValueError(f"No sentinel configured for {field_name}")
            ctx.set_field(field_name, sentinel)
