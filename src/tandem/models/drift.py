"""Drift domain models for Tandem."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from tandem.models.artifact import ArtifactKey


class DriftKind(str, enum.Enum):
    """How an environment's live artifact differs from its recorded state."""

    ADDED_LIVE_ONLY = "added-live-only"
    MODIFIED = "modified"
    DELETED_LIVE_ONLY = "deleted-live-only"

    def __str__(self) -> str:
        return self.value


class DriftSeverity(str, enum.Enum):
    WARNING = "warning"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value


class DriftResolution(str, enum.Enum):
    """How a drift record was closed.  Records are never deleted."""

    RECONCILED = "reconciled"  # no longer observed by a scan
    OVERWRITTEN = "overwritten"  # a deployment replaced the live artifact
    ABSORBED = "absorbed"  # the live artifact was committed to the track

    def __str__(self) -> str:
        return self.value


class DriftRecord(BaseModel):
    """One discrepancy between live state and ``last_applied_commit``."""

    record_id: str
    env_id: str
    key: ArtifactKey
    kind: DriftKind
    detected_at: datetime
    severity: DriftSeverity = DriftSeverity.WARNING
    commit_hash: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[DriftResolution] = None

    @property
    def is_open(self) -> bool:
        return self.resolution is None

    def identity(self) -> tuple[str, str, str]:
        return (self.env_id, str(self.key), self.kind.value)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.key} ({self.severity.value})"


class DriftScanResult(BaseModel):
    """Outcome of ``request_drift_scan``."""

    scan_id: str
    env_id: str
    commit_hash: Optional[str] = None
    scanned_at: datetime
    records: list[DriftRecord] = []

    @property
    def clean(self) -> bool:
        return not self.records
