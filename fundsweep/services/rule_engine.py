"""
Field rule engine.

evaluate(record) runs the enabled rules for the record's collection against
a RuleContext and folds the result into planned writes:
- DeleteRecord from any rule supersedes field updates
- otherwise the minimal UpdateFields relative to the scanned record
- plus any writes emitted for derived entities

A rule that raises is rolled back and reported as a RULE_ERROR issue; the
other rules' corrections for that record still apply.
"""

import logging
from dataclasses import dataclass, field

from ..db.base import Record
from ..rules.base import RuleContext
from ..rules.registry import FAMILY_ORDER, rules_for
from ..schemas.corrections import CorrectionSet, PlannedWrite
from ..schemas.issues import Issue, IssueKind, Severity, issue_code
from ..schemas.policy import SanitizePolicy
from .resolver import CrossReferenceResolver

logger = logging.getLogger(__name__)


@dataclass
class RecordOutcome:
    """Everything the engine decided for one record."""

    record: Record
    correction: CorrectionSet
    writes: list[PlannedWrite] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.record.path


def _ordered_families(families) -> list[str]:
    present = set(families)
    return [f for f in FAMILY_ORDER if f in present]


class FieldRuleEngine:
    """Evaluates records against the rule table. Holds no per-record state."""

    def __init__(self, resolver: CrossReferenceResolver, policy: SanitizePolicy):
        self.resolver = resolver
        self.policy = policy
        self._rules: dict[str, list] = {}

    def rules(self, collection: str) -> list:
        if collection not in self._rules:
            self._rules[collection] = rules_for(collection, self.policy)
        return self._rules[collection]

    def evaluate(self, record: Record) -> RecordOutcome:
        """
        Evaluate one record.

        Args:
            record: Scanned record

        Returns:
            RecordOutcome with the record's correction, all planned writes
            (own write first, then derived writes) and issues
        """
        ctx = RuleContext(record, self.resolver, self.policy)
        for rule in self.rules(record.collection):
            ctx.family = rule.family
            ctx.rule_name = rule.name
            state = ctx.checkpoint()
            try:
                rule.apply(ctx)
            except Exception as e:
                ctx.restore(state)
                logger.warning(f"Rule {rule.name} failed on {record.path}: {e}")
                ctx.issues.append(
                    Issue(
                        collection=record.collection,
                        record_id=record.doc_id,
                        code=issue_code(record.collection, "RULE_ERROR"),
                        kind=IssueKind.RULE_ERROR,
                        family=rule.family,
                        message=f"{rule.name} failed: {e}",
                        severity=Severity.ERROR,
                        detail={"rule": rule.name, "error": type(e).__name__},
                    )
                )

        writes: list[PlannedWrite] = []
        if ctx.deleted:
            correction = CorrectionSet.delete_record()
            writes.append(
                PlannedWrite(
                    collection=record.collection,
                    doc_id=record.doc_id,
                    correction=correction,
                    before=dict(record.data),
                    families=_ordered_families(ctx.delete_families),
                )
            )
        else:
            correction = CorrectionSet.update_fields(ctx.updates)
            if not correction.is_noop:
                writes.append(
                    PlannedWrite(
                        collection=record.collection,
                        doc_id=record.doc_id,
                        correction=correction,
                        before={k: record.data.get(k) for k in ctx.updates},
                        families=_ordered_families(ctx.field_families.values()),
                    )
                )
            writes.extend(ctx.derived)

        return RecordOutcome(record=record, correction=correction, writes=writes, issues=ctx.issues)

    def evaluate_safe(self, record: Record) -> RecordOutcome:
        """evaluate() that degrades an unexpected engine failure to a flagged no-op."""
        try:
            return self.evaluate(record)
        except Exception as e:
            logger.error(f"Evaluation failed on {record.path}: {e}", exc_info=True)
            return RecordOutcome(
                record=record,
                correction=CorrectionSet.no_action(),
                issues=[
                    Issue(
                        collection=record.collection,
                        record_id=record.doc_id,
                        code=issue_code(record.collection, "RULE_ERROR"),
                        kind=IssueKind.RULE_ERROR,
                        family="engine",
                        message=f"evaluation failed: {e}",
                        severity=Severity.ERROR,
                        detail={"error": type(e).__name__},
                    )
                ],
            )
