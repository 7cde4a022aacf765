"""Per-project Google OAuth access tokens, written by the OAuth connect flow."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from metricsync.models.sync import utcnow


class ProjectCredential(SQLModel, table=True):
    """
    The access token a project's Google connection currently holds.

    Refreshing is the connect flow's job; the sync engine only reads this row
    and reports an expired token as an unauthorized fetch.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(unique=True, index=True)
    user_email: str = ""
    access_token: str
    expires_at: Optional[datetime] = None  # naive UTC
    updated_at: datetime = Field(default_factory=utcnow)
