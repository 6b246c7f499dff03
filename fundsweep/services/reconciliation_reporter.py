"""
Reconciliation Reporter - tallies run outcomes and builds the structured report.

Provides:
- Per collection and per rule family counts of scanned, corrected, created,
  deleted, flagged and ambiguous records
- The JSON report (meta, counts, issues, stats, tally, writes, commit)
- Readable BEFORE -> AFTER lines for planned writes

Purely additive: nothing here feeds back into repair decisions.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..schemas.corrections import CorrectionKind, PlannedWrite, render_value
from ..schemas.issues import Issue, IssueKind

logger = logging.getLogger(__name__)


@dataclass
class FamilyTally:
    corrected: int = 0
    created: int = 0
    deleted: int = 0
    flagged: int = 0
    ambiguous: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "corrected": self.corrected,
            "created": self.created,
            "deleted": self.deleted,
            "flagged": self.flagged,
            "ambiguous": self.ambiguous,
        }


@dataclass
class CollectionTally(FamilyTally):
    """Counts for one collection, broken down by rule family."""

    scanned: int = 0
    families: Dict[str, FamilyTally] = field(default_factory=dict)

    def family(self, name: str) -> FamilyTally:
        return self.families.setdefault(name, FamilyTally())

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"scanned": self.scanned}
        result.update(super().to_dict())
        result["families"] = {name: t.to_dict() for name, t in self.families.items()}
        return result


def tally_key(collection: str) -> str:
    """Sub-collection paths tally under their group name."""
    return collection.rsplit("/", 1)[-1]


class ReconciliationReporter:
    """Collects scan counts, planned writes and issues for one run."""

    def __init__(self, project_id: str, dry_run: bool):
        self.project_id = project_id
        self.dry_run = dry_run
        self.started_at = datetime.now(timezone.utc)
        self.tallies: Dict[str, CollectionTally] = {}
        self.writes: List[PlannedWrite] = []
        self.issues: List[Issue] = []

    def tally(self, collection: str) -> CollectionTally:
        return self.tallies.setdefault(tally_key(collection), CollectionTally())

    def record_scanned(self, collection: str, count: int):
        self.tally(collection).scanned += count

    def record_write(self, write: PlannedWrite):
        self.writes.append(write)
        tally = self.tally(write.collection)
        attr = {
            CorrectionKind.UPDATE_FIELDS: "corrected",
            CorrectionKind.CREATE_RECORD: "created",
            CorrectionKind.DELETE_RECORD: "deleted",
        }.get(write.kind)
        if attr is None:
            return
        setattr(tally, attr, getattr(tally, attr) + 1)
        for family in write.families:
            family_tally = tally.family(family)
            setattr(family_tally, attr, getattr(family_tally, attr) + 1)

    def record_issue(self, issue: Issue):
        self.issues.append(issue)
        tally = self.tally(issue.collection)
        family_tally = tally.family(issue.family)
        tally.flagged += 1
        family_tally.flagged += 1
        if issue.kind == IssueKind.AMBIGUOUS_INFERENCE:
            tally.ambiguous += 1
            family_tally.ambiguous += 1

    # ─── Aggregates ──────────────────────────────────────────────────────────

    def stats(self) -> Dict[str, int]:
        """Issue count per issue code, most frequent first."""
        return dict(Counter(i.code for i in self.issues).most_common())

    def totals(self) -> Dict[str, int]:
        totals = Counter()
        for tally in self.tallies.values():
            totals["scanned"] += tally.scanned
            totals["corrected"] += tally.corrected
            totals["created"] += tally.created
            totals["deleted"] += tally.deleted
            totals["flagged"] += tally.flagged
            totals["ambiguous"] += tally.ambiguous
        return dict(totals)

    def build_report(
        self,
        state: str,
        commit: Optional[Dict[str, Any]] = None,
        features: Optional[Dict[str, bool]] = None,
    ) -> Dict[str, Any]:
        """Build the structured report document."""
        finished_at = datetime.now(timezone.utc)
        return {
            "meta": {
                "projectId": self.project_id,
                "generatedAt": finished_at.isoformat(),
                "mode": "dry-run" if self.dry_run else "apply",
                "state": state,
                "durationSeconds": round((finished_at - self.started_at).total_seconds(), 3),
                "features": features or {},
            },
            "counts": {name: t.scanned for name, t in self.tallies.items() if t.scanned},
            "issues": [i.to_dict() for i in self.issues],
            "stats": self.stats(),
            "totals": self.totals(),
            "tally": {name: t.to_dict() for name, t in self.tallies.items()},
            "writes": [w.to_dict() for w in self.writes],
            "commit": commit,
        }

    # ─── Text output ─────────────────────────────────────────────────────────

    def format_write(self, write: PlannedWrite) -> List[str]:
        """BEFORE -> AFTER lines for one planned write."""
        families = ", ".join(write.families)
        lines = [f"  {write.kind.value.upper()} {write.path} [{families}]"]
        if write.source:
            lines.append(f"    from {write.source}")
        if write.kind == CorrectionKind.DELETE_RECORD:
            lines.append(f"    BEFORE: {self._format_value(render_value(write.before))}")
            return lines
        after = render_value(write.after)
        before = render_value(write.before)
        for field_name, value in after.items():
            old = before.get(field_name) if field_name in before else None
            lines.append(f"    {field_name}: {self._format_value(old)} -> {self._format_value(value)}")
        return lines

    def _format_value(self, value: Any, max_len: int = 60) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, str):
            return f"{value[:max_len]}..." if len(value) > max_len else value
        text = json.dumps(value, default=str)
        return f"{text[:max_len]}..." if len(text) > max_len else text

    def generate_summary(self, limit: int = 50) -> str:
        """Readable summary of planned writes (capped) and issue stats."""
        lines = ["", "=" * 80, f"RECONCILIATION: {self.project_id} ({'DRY RUN' if self.dry_run else 'APPLY'})", "=" * 80]
        for write in self.writes[:limit]:
            lines.extend(self.format_write(write))
        if len(self.writes) > limit:
            lines.append(f"  ... +{len(self.writes) - limit} more writes")
        lines.append("")
        lines.append("ISSUES")
        for code, count in self.stats().items():
            lines.append(f"  {code:<45} {count}")
        lines.append("")
        return "\n".join(lines)


def write_report(report: Dict[str, Any], report_dir: Path, project_id: str) -> Path:
    """
    Persist a report as timestamped JSON.

    Returns:
        Path of the written file
    """
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    path = report_dir / f"sanitize_report_{project_id}_{stamp}.json"
    with open(path, "w") as f:
        json.dump(report, f, indent=2, default=str)
    logger.info(f"Report written to {path}")
    return path
