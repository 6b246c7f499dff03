"""Firestore client factory.

One client per (project, credentials) pair, cached for the process.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from google.cloud import firestore
from google.oauth2 import service_account

from ..errors import ConfigurationError


@lru_cache(maxsize=4)
def get_firestore_client(project_id: str, credentials_path: Optional[str] = None) -> firestore.Client:
    """
    Get a Firestore client for a project.

    Args:
        project_id: Target project
        credentials_path: Service account key file. None uses application
            default credentials.

    Returns:
        Cached firestore.Client

    Raises:
        ConfigurationError: If the key file cannot be loaded
    """
    credentials = None
    if credentials_path:
        path = Path(credentials_path)
        try:
            credentials = service_account.Credentials.from_service_account_file(str(path))
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Could not load credentials from {path}: {e}", missing=str(path)) from e
    return firestore.Client(project=project_id, credentials=credentials)
