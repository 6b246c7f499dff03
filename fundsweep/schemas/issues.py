"""Issue schemas for sanitize runs.

Issues are reportable findings, not errors: ambiguous inferences, orphan
references, org mismatches, invalid values. Codes follow the
<ENTITY>_<LABEL>_<TOKEN> shape used by the old validation reports, e.g.
DONATION_ORPHAN_CAMPAIGN or USER_MISSING_ORGID.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..constants import ENTITY_PREFIX
from .corrections import render_value


class Severity(str, Enum):
    """Severity level for issues."""

    ERROR = "error"  # could not be repaired, needs a human
    WARNING = "warning"  # repaired or resolved by policy, worth a look
    INFO = "info"


class IssueKind(str, Enum):
    AMBIGUOUS_INFERENCE = "ambiguous_inference"
    ORPHAN_REFERENCE = "orphan_reference"
    ORG_MISMATCH = "org_mismatch"
    INVALID_VALUE = "invalid_value"
    MISSING_FIELD = "missing_field"
    LEGACY_VALUE = "legacy_value"
    POLICY = "policy"
    RULE_ERROR = "rule_error"


@dataclass
class Issue:
    """A finding on a single record.

    Attributes:
        collection: Collection of the record
        record_id: Document id of the record
        code: Stable issue code (e.g. DONATION_ORPHAN_CAMPAIGN)
        kind: Issue category
        family: Rule family that raised it
        message: Human-readable description
        severity: How serious the issue is
        detail: Optional structured data
    """

    collection: str
    record_id: str
    code: str
    kind: IssueKind
    family: str
    message: str
    severity: Severity = Severity.WARNING
    detail: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "collection": self.collection,
            "recordId": self.record_id,
            "code": self.code,
            "kind": self.kind.value,
            "family": self.family,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.detail:
            result["detail"] = render_value(self.detail)
        return result


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def field_token(field_name: str) -> str:
    """orgId -> ORGID, donorEmail -> DONOREMAIL (dotted paths joined by _)."""
    return field_name.replace(".", "_").upper()


def reference_token(field_name: str) -> str:
    """campaignId -> CAMPAIGN, athleteId -> ATHLETE, donor.uid -> DONOR_UID."""
    base = field_name[:-2] if field_name.endswith("Id") and len(field_name) > 2 else field_name
    return _CAMEL_BOUNDARY.sub("_", base).replace(".", "_").upper()


def issue_code(collection: str, label: str, token: Optional[str] = None) -> str:
    prefix = ENTITY_PREFIX.get(collection, collection.upper())
    parts = [prefix, label]
    if token:
        parts.append(token)
    return "_".join(parts)
