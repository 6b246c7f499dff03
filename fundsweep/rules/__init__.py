"""
Sanitize rules.

Each rule is a small correction or check belonging to one rule family:
- normalize: legacy field promotion, trimming, email/role checks
- derive_from_parent: orgId/teamId inference and org consistency
- default_fill: sentinel placeholders for scope fields
- currency: whole-cent donation amounts
- orphans: foreign keys that do not resolve
- derived_entities / public_donors: coaches and public donor views
- donor_aggregates: donor totals rebuilt from donations
"""

from .base import Rule, RuleContext, is_blank, same_value
from .registry import FAMILY_ORDER, RULE_TABLE, rules_for
