"""Outbound events consumed by the notification sink.

Every event is persisted before it is dispatched, so the event log is the
durable record of conflicts, drift and deployment outcomes.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


def _event_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Event(BaseModel):
    event_id: str = Field(default_factory=_event_id)
    created_at: datetime = Field(default_factory=_now)


class MergeConflictDetected(_Event):
    kind: Literal["merge_conflict_detected"] = "merge_conflict_detected"
    conflict_set_id: str
    source_track: str
    target_track: str
    keys: list[str] = []


class DriftDetected(_Event):
    kind: Literal["drift_detected"] = "drift_detected"
    env_id: str
    scan_id: str
    records: list[str] = []  # "kind key" per record
    critical: int = 0


class DeploymentStateChanged(_Event):
    kind: Literal["deployment_state_changed"] = "deployment_state_changed"
    job_id: str
    env_id: str
    from_state: Optional[str] = None
    to_state: str
    detail: Optional[str] = None


class RetrofitLagExceeded(_Event):
    kind: Literal["retrofit_lag_exceeded"] = "retrofit_lag_exceeded"
    source_track: str
    target_track: str
    oldest_commit: str
    oldest_commit_at: datetime
    pending_commits: int


Event = Annotated[
    Union[
        MergeConflictDetected,
        DriftDetected,
        DeploymentStateChanged,
        RetrofitLagExceeded,
    ],
    Field(discriminator="kind"),
]
