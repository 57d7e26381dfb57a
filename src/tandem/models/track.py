"""Track and environment domain models for Tandem.

TrackInfo and EnvironmentInfo are the SDK-facing models returned when
listing tracks and deployment targets.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TrackRole(str, enum.Enum):
    """RUN mirrors what is live; BUILD mirrors what goes live next."""

    RUN = "run"
    BUILD = "build"

    def __str__(self) -> str:
        return self.value


class TrackInfo(BaseModel):
    """A long-lived branch: head pointer, role and environment binding."""

    name: str
    role: TrackRole
    head: Optional[str] = None
    environment: Optional[str] = None
    created_at: datetime


class EnvironmentInfo(BaseModel):
    """A live deployment target.

    ``last_applied_commit`` is the commit most recently deployed with
    success; drift is measured against it.
    """

    env_id: str
    track: Optional[str] = None
    last_applied_commit: Optional[str] = None
    quarantined: bool = False
    quarantine_reason: Optional[str] = None
    created_at: datetime
