"""Sanitize policy: sentinels, rule family switches, orphan handling, limits.

The policy replaces the constants the old per-collection scripts hardcoded
("demo-org", "UNASSIGNED", batch sizes, etc.). Defaults come from
config/sanitize_policy.yaml when present and from the model otherwise; CLI
flags override individual features.

Usage:
    from fundsweep.schemas.policy import load_policy

    policy = load_policy()
    policy.orphan_action("donations", "athleteId")  # OrphanAction.NULLIFY
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..constants import (
    ATHLETES,
    CAMPAIGN_ATHLETES,
    CAMPAIGNS,
    COACHES,
    COLLECTION_ORDER,
    COMMIT_INITIAL_BACKOFF_SECONDS,
    COMMIT_MAX_RETRIES,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_WORKERS,
    DEFAULT_STORE_TIMEOUT_SECONDS,
    DONATIONS,
    DONORS,
    FIRESTORE_MAX_BATCH_OPS,
    LIKELY_DOLLARS_THRESHOLD,
    MIN_COMMIT_INTERVAL_SECONDS,
    USERS,
)
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


class OrphanAction(str, Enum):
    """What to do with a foreign key that does not resolve."""

    FLAG = "flag"  # report only
    NULLIFY = "nullify"  # soft orphan: clear the field
    DELETE = "delete"  # hard orphan: remove the record


class DonorUserAction(str, Enum):
    FLAG = "flag"
    DELETE = "delete"


DEFAULT_ORPHAN_POLICIES: dict[str, OrphanAction] = {
    f"{CAMPAIGN_ATHLETES}.athleteId": OrphanAction.DELETE,
    f"{CAMPAIGN_ATHLETES}.campaignId": OrphanAction.DELETE,
    f"{DONATIONS}.campaignId": OrphanAction.FLAG,
    f"{DONATIONS}.athleteId": OrphanAction.NULLIFY,
    f"{DONATIONS}.teamId": OrphanAction.FLAG,
    f"{ATHLETES}.teamId": OrphanAction.FLAG,
    f"{ATHLETES}.userId": OrphanAction.FLAG,
    f"{USERS}.athleteId": OrphanAction.NULLIFY,
    f"{USERS}.teamId": OrphanAction.FLAG,
    f"{COACHES}.userId": OrphanAction.FLAG,
    f"{DONORS}.userId": OrphanAction.FLAG,
    f"{CAMPAIGNS}.teamId": OrphanAction.FLAG,
}


class Sentinels(BaseModel):
    """Placeholder identifiers used when nothing better can be inferred."""

    model_config = ConfigDict(extra="forbid")

    org_id: str = Field("demo-org", min_length=1, description="Fallback organization id")
    team_id: str = Field("UNASSIGNED", min_length=1, description="Fallback team id")
    campaign_id: str = Field("unknown-campaign", min_length=1, description="Fallback campaign id")

    def values(self) -> set[str]:
        return {self.org_id, self.team_id, self.campaign_id}

    def for_field(self, field_name: str) -> Optional[str]:
        return {
            "orgId": self.org_id,
            "teamId": self.team_id,
            "campaignId": self.campaign_id,
        }.get(field_name)


class FeatureFlags(BaseModel):
    """Rule family switches. Heuristic and backfill families are opt-in."""

    model_config = ConfigDict(extra="forbid")

    default_fill: bool = True
    derive_from_parent: bool = True
    normalize: bool = True
    currency: bool = True
    convert_likely_dollars: bool = False
    orphans: bool = True
    derived_entities: bool = True
    donor_aggregates: bool = False
    public_donors: bool = False
    blob_cleanup: bool = True
    created_at_backfill: bool = True
    campaign_is_public: bool = False


class SanitizePolicy(BaseModel):
    """Complete policy for one sanitize run."""

    model_config = ConfigDict(extra="forbid")

    sentinels: Sentinels = Field(default_factory=Sentinels)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    likely_dollars_threshold: int = Field(LIKELY_DOLLARS_THRESHOLD, gt=0)
    campaign_is_public_default: bool = True
    orphan_policies: dict[str, OrphanAction] = Field(default_factory=lambda: dict(DEFAULT_ORPHAN_POLICIES))
    donor_users: DonorUserAction = DonorUserAction.FLAG

    batch_size: int = Field(DEFAULT_BATCH_SIZE, ge=1)
    max_workers: int = Field(DEFAULT_MAX_WORKERS, ge=1, le=64)
    commit_retries: int = Field(COMMIT_MAX_RETRIES, ge=0, le=10)
    commit_backoff_seconds: float = Field(COMMIT_INITIAL_BACKOFF_SECONDS, ge=0)
    store_timeout_seconds: float = Field(DEFAULT_STORE_TIMEOUT_SECONDS, gt=0)
    min_commit_interval_seconds: float = Field(MIN_COMMIT_INTERVAL_SECONDS, ge=0)

    @field_validator("batch_size")
    @classmethod
    def _below_store_cap(cls, v: int) -> int:
        if v >= FIRESTORE_MAX_BATCH_OPS:
            raise ValueError(f"batch_size must stay below the store cap of {FIRESTORE_MAX_BATCH_OPS}, got {v}")
        return v

    @field_validator("orphan_policies", mode="before")
    @classmethod
    def _merge_orphan_defaults(cls, v: Any) -> Any:
        if v is None:
            return dict(DEFAULT_ORPHAN_POLICIES)
        if not isinstance(v, dict):
            raise ValueError("orphan_policies must be a mapping of 'collection.field' to an action")
        merged: dict[str, Any] = dict(DEFAULT_ORPHAN_POLICIES)
        for key, action in v.items():
            collection, _, field_name = str(key).partition(".")
            if not field_name or collection not in COLLECTION_ORDER:
                raise ValueError(f"Invalid orphan policy key '{key}' (expected '<collection>.<field>')")
            merged[key] = action
        return merged

    def orphan_action(self, collection: str, field_name: str) -> OrphanAction:
        return self.orphan_policies.get(f"{collection}.{field_name}", OrphanAction.FLAG)

    def with_features(self, **overrides: Optional[bool]) -> "SanitizePolicy":
        """Return a copy with the given feature flags overridden (None = keep)."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        unknown = set(updates) - set(FeatureFlags.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown feature flags: {sorted(unknown)}")
        features = self.features.model_copy(update=updates)
        return self.model_copy(update={"features": features})


def _get_config_path() -> Path:
    return Path(__file__).parent.parent.parent / "config" / "sanitize_policy.yaml"


def load_policy(path: Optional[Path] = None) -> SanitizePolicy:
    """
    Load the sanitize policy from YAML.

    Args:
        path: Policy file. Defaults to config/sanitize_policy.yaml; when that
            default is missing the built-in model defaults are used.

    Returns:
        Validated SanitizePolicy

    Raises:
        ConfigurationError: If an explicit file is missing or the policy is invalid
    """
    explicit = path is not None
    config_path = Path(path) if explicit else _get_config_path()

    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"Policy file not found: {config_path}", missing=str(config_path))
        logger.warning(f"Sanitize policy not found at {config_path}, using defaults")
        return SanitizePolicy()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    try:
        policy = SanitizePolicy.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sanitize policy {config_path}: {e}") from e

    logger.info(f"Loaded sanitize policy from {config_path} ({len(policy.orphan_policies)} orphan policies)")
    return policy
