"""Orphan detection: foreign keys that do not resolve, handled per relationship policy."""

from ..schemas.policy import OrphanAction
from .base import Rule, RuleContext, is_blank


class OrphanReference(Rule):
    """
    Check one foreign key against the reference snapshot.

    The action comes from policy.orphan_policies["collection.field"]:
    flag (report only), nullify (clear the field) or delete (remove the
    record). A required key that is absent is treated like an orphan when
    the action is delete. Sentinel ids are placeholders, not orphans.
    """

    family = "orphans"

    def __init__(self, field_name: str, target: str, required: bool = False):
        self.field_name = field_name
        self.target = target
        self.required = required

    def apply(self, ctx: RuleContext) -> None:
        value = ctx.view.get(self.field_name)
        action = ctx.policy.orphan_action(ctx.collection, self.field_name)

        if is_blank(value):
            if self.required:
                ctx.flag_missing(self.field_name)
                if action == OrphanAction.DELETE:
                    ctx.mark_delete()
            return

        if value in ctx.policy.sentinels.values():
            return
        if ctx.resolver.exists(self.target, value):
            return

        ctx.flag_orphan(self.field_name, self.target, value, action.value)
        if action == OrphanAction.NULLIFY:
            ctx.set_field(self.field_name, None)
        elif action == OrphanAction.DELETE:
            ctx.mark_delete()
