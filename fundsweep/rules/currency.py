"""
Currency normalization for donations.

Donation amounts are integer cents. Old records may carry the value under
amountCents, as a float, or in dollars. Dollar detection is a heuristic
(0 < amount < threshold) and only converts when convert_likely_dollars is
enabled; the original value is kept under legacyAmount with a unit tag, and
a record that already has legacyAmount is never converted again.
"""

from typing import Any

from ..constants import LEGACY_CURRENCY_UNIT
from ..schemas.issues import IssueKind, Severity
from .base import Rule, RuleContext


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def as_cents(value: float) -> int:
    return int(round(value))


class NormalizeAmount(Rule):
    family = "currency"

    def __init__(self, field_name: str = "amount", legacy_field: str = "amountCents"):
        self.field_name = field_name
        self.legacy_field = legacy_field

    def apply(self, ctx: RuleContext) -> None:
        amount = ctx.view.get(self.field_name)

        if amount is None:
            legacy = ctx.view.get(self.legacy_field)
            if is_number(legacy) and legacy >= 0:
                ctx.set_field(self.field_name, as_cents(legacy))
            else:
                ctx.flag_missing(self.field_name, severity=Severity.ERROR)
            return

        if not is_number(amount):
            ctx.flag_invalid(self.field_name, amount, "is not a number")
            return
        if amount < 0:
            ctx.flag_invalid(self.field_name, amount, "is negative")
            return

        if self._likely_dollars(ctx, amount):
            if ctx.policy.features.convert_likely_dollars:
                ctx.set_field(self.field_name, as_cents(amount * 100))
                ctx.set_field("legacyAmount", amount)
                ctx.set_field("legacyCurrencyUnit", LEGACY_CURRENCY_UNIT)
                return
            ctx.flag(
                "AMOUNT",
                "LIKELY_DOLLARS",
                IssueKind.LEGACY_VALUE,
                f"{self.field_name} {amount} looks like dollars (below {ctx.policy.likely_dollars_threshold})",
                detail={"amount": amount, "threshold": ctx.policy.likely_dollars_threshold},
            )

        if isinstance(amount, float):
            if amount.is_integer():
                ctx.set_field(self.field_name, int(amount))
            else:
                ctx.flag_invalid(self.field_name, amount, "is not whole cents")

    def _likely_dollars(self, ctx: RuleContext, amount: float) -> bool:
        # a value that matches amountCents came from cents
        legacy = ctx.view.get(self.legacy_field)
        if is_number(legacy) and as_cents(legacy) == amount:
            return False
        if ctx.view.get("legacyAmount") is not None:
            return False
        return 0 < amount < ctx.policy.likely_dollars_threshold
