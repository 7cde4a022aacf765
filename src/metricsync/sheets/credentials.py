"""Credential provider: per-project google-auth credentials from the database."""
import logging
from typing import Optional

from google.oauth2.credentials import Credentials
from sqlmodel import Session, select

from metricsync.models.credentials import ProjectCredential

logger = logging.getLogger(__name__)

SCOPES = ("https://www.googleapis.com/auth/spreadsheets.readonly",)


class CredentialProvider:
    """Builds read-only Sheets credentials for a project, or None if it never connected."""

    def __init__(self, engine):
        self.engine = engine

    def get_credentials(self, project_id: str) -> Optional[Credentials]:
        with Session(self.engine) as s:
            row = s.exec(
                select(ProjectCredential).where(ProjectCredential.project_id == project_id)
            ).first()
        if row is None:
            logger.info("No Google connection stored for project %s", project_id)
            return None
        # No refresh token on purpose: an expired token must surface as
        # unauthorized instead of being silently refreshed here.
        return Credentials(token=row.access_token, expiry=row.expires_at, scopes=list(SCOPES))
