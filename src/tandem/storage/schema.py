"""SQLAlchemy ORM schema for Tandem.

Defines all database tables: blobs, commits, commit_parents,
artifact_changes, tracks, environments, live_artifacts, snapshots,
deployment_jobs, job_transitions, drift_records, conflict_sets,
conflict_entries, retrofits, events, requests, _tandem_meta.

IMPORTANT: ChangeKind, CommitKind, TrackRole, JobState and the other enums
are imported from the domain models -- they are NOT redefined here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tandem.models.commit import ChangeKind, CommitKind
from tandem.models.deployment import JobState
from tandem.models.drift import DriftKind, DriftResolution
from tandem.models.merge import ConflictSetStatus, MergePolicy
from tandem.models.track import TrackRole


class Base(DeclarativeBase):
    """Base class for all Tandem ORM models."""

    pass


class BlobRow(Base):
    """Content-addressable artifact payload.  Keyed by SHA-256 of the
    artifact's canonical form."""

    __tablename__ = "blobs"

    content_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    byte_size: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class CommitRow(Base):
    """An immutable commit in the changeset DAG."""

    __tablename__ = "commits"

    commit_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    track: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    parent_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("commits.commit_hash", ondelete="SET NULL"),
        nullable=True,
    )
    kind: Mapped[CommitKind] = mapped_column(nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_commits_track_time", "track", "created_at"),
        Index("ix_commits_parent", "parent_hash"),
    )


class CommitParentRow(Base):
    """Association table for multi-parent commits (merge commits).

    For non-merge commits, only CommitRow.parent_hash is used (single parent).
    For merge commits, this table stores ALL parents (including the first).
    The 'position' column preserves parent ordering: 0 = target track head,
    1 = merged source head.
    """

    __tablename__ = "commit_parents"

    commit_hash: Mapped[str] = mapped_column(
        String(64), ForeignKey("commits.commit_hash"), primary_key=True
    )
    parent_hash: Mapped[str] = mapped_column(
        String(64), ForeignKey("commits.commit_hash"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("ix_commit_parents_commit", "commit_hash"),)


class ArtifactChangeRow(Base):
    """One entry of a commit's ordered change list."""

    __tablename__ = "artifact_changes"

    commit_hash: Mapped[str] = mapped_column(
        String(64), ForeignKey("commits.commit_hash"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    change_kind: Mapped[ChangeKind] = mapped_column(nullable=False)
    artifact_type: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    content_hash: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("blobs.content_hash"), nullable=True
    )

    __table_args__ = (
        Index("ix_artifact_changes_key", "artifact_type", "artifact_name"),
    )


class TrackRow(Base):
    """Mutable head pointer of a track, its role and environment binding."""

    __tablename__ = "tracks"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    role: Mapped[TrackRole] = mapped_column(nullable=False)
    head_hash: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("commits.commit_hash"), nullable=True
    )
    environment: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class EnvironmentRow(Base):
    """A deployment target and the commit last applied to it."""

    __tablename__ = "environments"

    env_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_applied_commit: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("commits.commit_hash"), nullable=True
    )
    quarantined: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quarantine_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class LiveArtifactRow(Base):
    """The actual (live) artifact set of an environment."""

    __tablename__ = "live_artifacts"

    env_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("environments.env_id"), primary_key=True
    )
    artifact_type: Mapped[str] = mapped_column(String(255), primary_key=True)
    artifact_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    content_hash: Mapped[str] = mapped_column(
        String(64), ForeignKey("blobs.content_hash"), nullable=False
    )


class SnapshotRow(Base):
    """A full copy of an environment's live state taken before a deploy."""

    __tablename__ = "snapshots"

    snapshot_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    env_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class SnapshotArtifactRow(Base):
    __tablename__ = "snapshot_artifacts"

    snapshot_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("snapshots.snapshot_id"), primary_key=True
    )
    artifact_type: Mapped[str] = mapped_column(String(255), primary_key=True)
    artifact_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    content_hash: Mapped[str] = mapped_column(
        String(64), ForeignKey("blobs.content_hash"), nullable=False
    )


class DeploymentJobRow(Base):
    """A promotion attempt.  Immutable once its state is terminal."""

    __tablename__ = "deployment_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    env_id: Mapped[str] = mapped_column(String(255), nullable=False)
    track: Mapped[str] = mapped_column(String(255), nullable=False)
    commit_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[JobState] = mapped_column(nullable=False)
    snapshot_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    overwrite_drift: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    planned_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_deployment_jobs_env_state", "env_id", "state"),
        Index("ix_deployment_jobs_env_time", "env_id", "created_at"),
    )


class JobTransitionRow(Base):
    """Append-only audit of every state-machine edge a job took."""

    __tablename__ = "job_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("deployment_jobs.job_id"), nullable=False, index=True
    )
    from_state: Mapped[Optional[JobState]] = mapped_column(nullable=True)
    to_state: Mapped[JobState] = mapped_column(nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class DriftRecordRow(Base):
    """A detected drift.  Closed with a resolution, never deleted."""

    __tablename__ = "drift_records"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    env_id: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_type: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[DriftKind] = mapped_column(nullable=False)
    commit_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolution: Mapped[Optional[DriftResolution]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_drift_records_env_open", "env_id", "resolution"),
    )


class ConflictSetRow(Base):
    """Header of a conflict set opened by a retrofit."""

    __tablename__ = "conflict_sets"

    conflict_set_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_track: Mapped[str] = mapped_column(String(255), nullable=False)
    target_track: Mapped[str] = mapped_column(String(255), nullable=False)
    source_head: Mapped[str] = mapped_column(String(64), nullable=False)
    target_head: Mapped[str] = mapped_column(String(64), nullable=False)
    base_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    policy: Mapped[MergePolicy] = mapped_column(nullable=False)
    status: Mapped[ConflictSetStatus] = mapped_column(nullable=False)
    partial_commit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    merge_commit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_conflict_sets_pair_status", "source_track", "target_track", "status"),
    )


class ConflictEntryRow(Base):
    """One conflicting artifact of a conflict set.

    ``entry_json`` holds the serialized ConflictEntry (both sides and base).
    """

    __tablename__ = "conflict_entries"

    conflict_set_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conflict_sets.conflict_set_id"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    artifact_type: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    entry_json: Mapped[dict] = mapped_column(JSON, nullable=False)


class RetrofitRow(Base):
    """Outcome of every retrofit attempt."""

    __tablename__ = "retrofits"

    retrofit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_track: Mapped[str] = mapped_column(String(255), nullable=False)
    target_track: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    source_head: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    target_head: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    base_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    merge_commit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    partial_commit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    conflict_set_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    merged_keys_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class EventRow(Base):
    """Durable outbox of emitted events."""

    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_events_kind_time", "kind", "created_at"),)


class RequestRow(Base):
    """Idempotency log: client request id -> stored command result."""

    __tablename__ = "requests"

    request_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    command: Mapped[str] = mapped_column(String(50), nullable=False)
    result_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class TandemMetaRow(Base):
    """Key-value metadata for the Tandem database itself (e.g., schema version)."""

    __tablename__ = "_tandem_meta"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
