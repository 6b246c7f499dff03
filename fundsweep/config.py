"""
Run configuration: target project, credentials, mode and report location.

Environment variables:
  - FIREBASE_PROJECT_ID / GOOGLE_CLOUD_PROJECT: target project
  - GOOGLE_APPLICATION_CREDENTIALS: service account key file
  - FUNDSWEEP_REPORT_DIR: where --write-report puts JSON reports
    (default: ./sanitize_reports)

A serviceAccountKey.json next to the runner script is used when no
credentials are configured, matching how the old maintenance scripts were
invoked.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .constants import COLLECTION_ORDER
from .errors import ConfigurationError

DEFAULT_KEY_FILE = "serviceAccountKey.json"


def get_report_dir() -> Path:
    """
    Get the report output directory.

    Uses FUNDSWEEP_REPORT_DIR if set, otherwise ./sanitize_reports

    Returns:
        Path to report directory
    """
    env_path = os.environ.get("FUNDSWEEP_REPORT_DIR")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.cwd() / "sanitize_reports"


def resolve_project_id(explicit: Optional[str] = None) -> Optional[str]:
    return explicit or os.environ.get("FIREBASE_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT") or None


def resolve_credentials(explicit: Optional[str] = None, search_dir: Optional[Path] = None) -> Optional[Path]:
    """Find the service account key: flag, then env, then the default key file."""
    candidate = explicit or os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    if candidate:
        return Path(candidate).expanduser()
    default_key = (search_dir or Path.cwd()) / DEFAULT_KEY_FILE
    if default_key.exists():
        return default_key
    return None


@dataclass
class RunSettings:
    """Everything a run needs besides the policy.

    Attributes:
        project_id: Target tenant/project identifier
        credentials_path: Service account key file (None for in-memory stores)
        apply: Write corrections (False = dry run)
        collections: Collections to evaluate, in evaluation order
        write_report: Persist the JSON report
        report_dir: Directory for persisted reports
    """

    project_id: str
    credentials_path: Optional[Path] = None
    apply: bool = False
    collections: list[str] = field(default_factory=lambda: list(COLLECTION_ORDER))
    write_report: bool = False
    report_dir: Path = field(default_factory=get_report_dir)

    @classmethod
    def from_args(
        cls,
        project_id: Optional[str] = None,
        credentials: Optional[str] = None,
        apply: bool = False,
        collections: Optional[list[str]] = None,
        write_report: bool = False,
        report_dir: Optional[str] = None,
        search_dir: Optional[Path] = None,
        require_credentials: bool = True,
    ) -> "RunSettings":
        """
        Build settings from CLI arguments and the environment.

        Raises:
            ConfigurationError: Missing project id or credentials, unknown collection
        """
        resolved_project = resolve_project_id(project_id)
        if not resolved_project:
            raise ConfigurationError(
                "Missing project id: pass --project-id or set FIREBASE_PROJECT_ID",
                missing="project_id",
            )

        credentials_path = resolve_credentials(credentials, search_dir)
        if require_credentials:
            if credentials_path is None:
                raise ConfigurationError(
                    "Missing credentials: pass --credentials, set GOOGLE_APPLICATION_CREDENTIALS "
                    f"or place {DEFAULT_KEY_FILE} next to the runner",
                    missing="credentials",
                )
            if not credentials_path.exists():
                raise ConfigurationError(
                    f"Credentials file not found: {credentials_path}", missing=str(credentials_path)
                )

        return cls(
            project_id=resolved_project,
            credentials_path=credentials_path,
            apply=apply,
            collections=normalize_collections(collections),
            write_report=write_report,
            report_dir=Path(report_dir).expanduser() if report_dir else get_report_dir(),
        )


def normalize_collections(collections: Optional[list[str]]) -> list[str]:
    """Validate a collection subset and return it in evaluation order."""
    if not collections:
        return list(COLLECTION_ORDER)
    unknown = [c for c in collections if c not in COLLECTION_ORDER]
    if unknown:
        raise ConfigurationError(f"Unknown collections: {', '.join(unknown)}", missing=unknown[0])
    return [c for c in COLLECTION_ORDER if c in collections]
