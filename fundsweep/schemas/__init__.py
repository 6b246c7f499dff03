"""Sanitize schemas - policy, corrections and issue types."""

from .corrections import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    CorrectionKind,
    CorrectionSet,
    PlannedWrite,
)
from .issues import Issue, IssueKind, Severity
from .policy import FeatureFlags, OrphanAction, SanitizePolicy, Sentinels, load_policy

__all__ = [
    "DELETE_FIELD",
    "SERVER_TIMESTAMP",
    "CorrectionKind",
    "CorrectionSet",
    "PlannedWrite",
    "Issue",
    "IssueKind",
    "Severity",
    "FeatureFlags",
    "OrphanAction",
    "SanitizePolicy",
    "Sentinels",
    "load_policy",
]
