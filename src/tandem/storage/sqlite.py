"""SQLite implementations of repository interfaces.

All repositories use SQLAlchemy 2.0-style queries (select() + session.execute()).
Each repository takes a Session in its constructor.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Sequence

from sqlalchemy import and_, delete, select
from sqlalchemy.orm import Session

from tandem.exceptions import BlobNotFoundError, TrackNotFoundError
from tandem.models.artifact import Artifact, ArtifactKey
from tandem.models.deployment import TERMINAL_STATES, JobState
from tandem.models.drift import DriftResolution
from tandem.models.merge import ConflictSetStatus
from tandem.storage.repositories import (
    BlobRepository,
    ChangeRepository,
    CommitParentRepository,
    CommitRepository,
    ConflictRepository,
    DriftRepository,
    EnvironmentRepository,
    EventRepository,
    JobRepository,
    LiveStateRepository,
    RequestRepository,
    RetrofitRepository,
    SnapshotRepository,
    TrackRepository,
)
from tandem.storage.schema import (
    ArtifactChangeRow,
    BlobRow,
    CommitParentRow,
    CommitRow,
    ConflictEntryRow,
    ConflictSetRow,
    DeploymentJobRow,
    DriftRecordRow,
    EnvironmentRow,
    EventRow,
    JobTransitionRow,
    LiveArtifactRow,
    RequestRow,
    RetrofitRow,
    SnapshotArtifactRow,
    SnapshotRow,
    TrackRow,
)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; stored datetimes are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqliteBlobRepository(BlobRepository):
    """SQLite implementation of blob repository.

    Content-addressable: put() checks existence before insert.  Loaded
    artifacts are memoized per session since blobs are immutable.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._loaded: dict[str, Artifact] = {}

    def put(self, artifact: Artifact) -> str:
        c_hash = artifact.content_hash()
        existing = self._session.get(BlobRow, c_hash)
        if existing is None:
            # model_dump_json keeps ordered container children in order.
            raw = artifact.model_dump_json().encode("utf-8")
            self._session.add(
                BlobRow(
                    content_hash=c_hash,
                    payload_json=raw.decode("utf-8"),
                    byte_size=len(raw),
                    created_at=datetime.now(timezone.utc),
                )
            )
            self._session.flush()
        return c_hash

    def get(self, content_hash: str) -> Artifact:
        cached = self._loaded.get(content_hash)
        if cached is not None:
            return cached
        row = self._session.get(BlobRow, content_hash)
        if row is None:
            raise BlobNotFoundError(content_hash)
        artifact = Artifact.model_validate(json.loads(row.payload_json))
        self._loaded[content_hash] = artifact
        return artifact


class SqliteCommitRepository(CommitRepository):
    """SQLite implementation of commit repository."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, commit_hash: str) -> CommitRow | None:
        stmt = select(CommitRow).where(CommitRow.commit_hash == commit_hash)
        return self._session.execute(stmt).scalar_one_or_none()

    def save(self, commit: CommitRow) -> None:
        self._session.add(commit)
        self._session.flush()

    def get_by_prefix(self, prefix: str) -> CommitRow | None:
        if len(prefix) < 4:
            raise ValueError("Commit hash prefix must be at least 4 characters")
        stmt = select(CommitRow).where(CommitRow.commit_hash.startswith(prefix))
        results = list(self._session.execute(stmt).scalars().all())
        if not results:
            return None
        if len(results) > 1:
            candidates = ", ".join(r.commit_hash[:12] for r in results[:5])
            raise ValueError(f"Ambiguous prefix '{prefix}'. Matches: {candidates}")
        return results[0]

    def get_first_parent_chain(self, commit_hash: str) -> list[CommitRow]:
        chain: list[CommitRow] = []
        current: str | None = commit_hash
        while current is not None:
            row = self.get(current)
            if row is None:
                break
            chain.append(row)
            current = row.parent_hash
        return chain


class SqliteCommitParentRepository(CommitParentRepository):
    """SQLite implementation of multi-parent commit storage."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def add_parents(self, commit_hash: str, parent_hashes: list[str]) -> None:
        for i, ph in enumerate(parent_hashes):
            self._session.add(
                CommitParentRow(commit_hash=commit_hash, parent_hash=ph, position=i)
            )
        self._session.flush()

    def get_parents(self, commit_hash: str) -> list[str]:
        stmt = (
            select(CommitParentRow.parent_hash)
            .where(CommitParentRow.commit_hash == commit_hash)
            .order_by(CommitParentRow.position)
        )
        return list(self._session.execute(stmt).scalars().all())


class SqliteChangeRepository(ChangeRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, row: ArtifactChangeRow) -> None:
        self._session.add(row)
        self._session.flush()

    def get_for_commit(self, commit_hash: str) -> Sequence[ArtifactChangeRow]:
        stmt = (
            select(ArtifactChangeRow)
            .where(ArtifactChangeRow.commit_hash == commit_hash)
            .order_by(ArtifactChangeRow.position)
        )
        return list(self._session.execute(stmt).scalars().all())


class SqliteTrackRepository(TrackRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, name: str) -> TrackRow | None:
        return self._session.get(TrackRow, name)

    def save(self, row: TrackRow) -> None:
        self._session.add(row)
        self._session.flush()

    def list(self) -> Sequence[TrackRow]:
        stmt = select(TrackRow).order_by(TrackRow.created_at, TrackRow.name)
        return list(self._session.execute(stmt).scalars().all())

    def set_head(self, name: str, commit_hash: str) -> None:
        row = self.get(name)
        if row is None:
            raise TrackNotFoundError(name)
        row.head_hash = commit_hash
        self._session.flush()

    def get_by_environment(self, env_id: str) -> TrackRow | None:
        stmt = select(TrackRow).where(TrackRow.environment == env_id)
        return self._session.execute(stmt).scalars().first()


class SqliteEnvironmentRepository(EnvironmentRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, env_id: str) -> EnvironmentRow | None:
        return self._session.get(EnvironmentRow, env_id)

    def save(self, row: EnvironmentRow) -> None:
        self._session.add(row)
        self._session.flush()

    def list(self) -> Sequence[EnvironmentRow]:
        stmt = select(EnvironmentRow).order_by(EnvironmentRow.env_id)
        return list(self._session.execute(stmt).scalars().all())


class SqliteLiveStateRepository(LiveStateRepository):
    """Live artifact sets keyed by (env, type, name)."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def read(self, env_id: str) -> dict[ArtifactKey, str]:
        stmt = select(LiveArtifactRow).where(LiveArtifactRow.env_id == env_id)
        return {
            ArtifactKey(type=r.artifact_type, name=r.artifact_name): r.content_hash
            for r in self._session.execute(stmt).scalars().all()
        }

    def _row(self, env_id: str, key: ArtifactKey) -> LiveArtifactRow | None:
        return self._session.get(LiveArtifactRow, (env_id, key.type, key.name))

    def put(self, env_id: str, key: ArtifactKey, content_hash: str) -> None:
        row = self._row(env_id, key)
        if row is None:
            self._session.add(
                LiveArtifactRow(
                    env_id=env_id,
                    artifact_type=key.type,
                    artifact_name=key.name,
                    content_hash=content_hash,
                )
            )
        else:
            row.content_hash = content_hash
        self._session.flush()

    def remove(self, env_id: str, key: ArtifactKey) -> bool:
        row = self._row(env_id, key)
        if row is None:
            return False
        self._session.delete(row)
        self._session.flush()
        return True

    def replace_all(self, env_id: str, entries: dict[ArtifactKey, str]) -> None:
        self._session.execute(
            delete(LiveArtifactRow).where(LiveArtifactRow.env_id == env_id)
        )
        for key, c_hash in entries.items():
            self._session.add(
                LiveArtifactRow(
                    env_id=env_id,
                    artifact_type=key.type,
                    artifact_name=key.name,
                    content_hash=c_hash,
                )
            )
        self._session.flush()


class SqliteSnapshotRepository(SnapshotRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(
        self,
        snapshot_id: str,
        env_id: str,
        job_id: str | None,
        entries: dict[ArtifactKey, str],
        created_at: datetime,
    ) -> SnapshotRow:
        row = SnapshotRow(
            snapshot_id=snapshot_id, env_id=env_id, job_id=job_id, created_at=created_at
        )
        self._session.add(row)
        self._session.flush()
        for key, c_hash in entries.items():
            self._session.add(
                SnapshotArtifactRow(
                    snapshot_id=snapshot_id,
                    artifact_type=key.type,
                    artifact_name=key.name,
                    content_hash=c_hash,
                )
            )
        self._session.flush()
        return row

    def get_entries(self, snapshot_id: str) -> dict[ArtifactKey, str] | None:
        if self._session.get(SnapshotRow, snapshot_id) is None:
            return None
        stmt = select(SnapshotArtifactRow).where(
            SnapshotArtifactRow.snapshot_id == snapshot_id
        )
        return {
            ArtifactKey(type=r.artifact_type, name=r.artifact_name): r.content_hash
            for r in self._session.execute(stmt).scalars().all()
        }


class SqliteJobRepository(JobRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, job_id: str) -> DeploymentJobRow | None:
        return self._session.get(DeploymentJobRow, job_id)

    def save(self, row: DeploymentJobRow) -> None:
        self._session.add(row)
        self._session.flush()

    def get_active(self, env_id: str) -> DeploymentJobRow | None:
        stmt = (
            select(DeploymentJobRow)
            .where(
                DeploymentJobRow.env_id == env_id,
                DeploymentJobRow.state.not_in(list(TERMINAL_STATES)),
            )
            .order_by(DeploymentJobRow.created_at)
        )
        return self._session.execute(stmt).scalars().first()

    def list(
        self, env_id: str | None = None, states: set[JobState] | None = None
    ) -> Sequence[DeploymentJobRow]:
        conditions = []
        if env_id is not None:
            conditions.append(DeploymentJobRow.env_id == env_id)
        if states:
            conditions.append(DeploymentJobRow.state.in_(list(states)))
        stmt = select(DeploymentJobRow)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(DeploymentJobRow.created_at)
        return list(self._session.execute(stmt).scalars().all())

    def add_transition(self, row: JobTransitionRow) -> None:
        self._session.add(row)
        self._session.flush()

    def get_transitions(self, job_id: str) -> Sequence[JobTransitionRow]:
        stmt = (
            select(JobTransitionRow)
            .where(JobTransitionRow.job_id == job_id)
            .order_by(JobTransitionRow.id)
        )
        return list(self._session.execute(stmt).scalars().all())


class SqliteDriftRepository(DriftRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_open(self, env_id: str) -> Sequence[DriftRecordRow]:
        stmt = (
            select(DriftRecordRow)
            .where(DriftRecordRow.env_id == env_id, DriftRecordRow.resolution.is_(None))
            .order_by(DriftRecordRow.artifact_type, DriftRecordRow.artifact_name)
        )
        return list(self._session.execute(stmt).scalars().all())

    def save(self, row: DriftRecordRow) -> None:
        self._session.add(row)
        self._session.flush()

    def list(self, env_id: str, *, include_resolved: bool = False) -> Sequence[DriftRecordRow]:
        if not include_resolved:
            return self.get_open(env_id)
        stmt = (
            select(DriftRecordRow)
            .where(DriftRecordRow.env_id == env_id)
            .order_by(DriftRecordRow.detected_at, DriftRecordRow.record_id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def close(self, row: DriftRecordRow, resolution: DriftResolution, at: datetime) -> None:
        row.resolution = resolution
        row.resolved_at = at
        self._session.flush()


class SqliteConflictRepository(ConflictRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, conflict_set_id: str) -> ConflictSetRow | None:
        return self._session.get(ConflictSetRow, conflict_set_id)

    def save(self, row: ConflictSetRow, entries: list[ConflictEntryRow]) -> None:
        self._session.add(row)
        self._session.flush()
        for entry in entries:
            self._session.add(entry)
        self._session.flush()

    def get_entries(self, conflict_set_id: str) -> Sequence[ConflictEntryRow]:
        stmt = (
            select(ConflictEntryRow)
            .where(ConflictEntryRow.conflict_set_id == conflict_set_id)
            .order_by(ConflictEntryRow.position)
        )
        return list(self._session.execute(stmt).scalars().all())

    def find(
        self,
        *,
        source_track: str | None = None,
        target_track: str | None = None,
        status: ConflictSetStatus | None = None,
    ) -> Sequence[ConflictSetRow]:
        conditions = []
        if source_track is not None:
            conditions.append(ConflictSetRow.source_track == source_track)
        if target_track is not None:
            conditions.append(ConflictSetRow.target_track == target_track)
        if status is not None:
            conditions.append(ConflictSetRow.status == status)
        stmt = select(ConflictSetRow)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(ConflictSetRow.created_at)
        return list(self._session.execute(stmt).scalars().all())


class SqliteRetrofitRepository(RetrofitRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def save(self, row: RetrofitRow) -> None:
        self._session.add(row)
        self._session.flush()

    def get(self, retrofit_id: str) -> RetrofitRow | None:
        return self._session.get(RetrofitRow, retrofit_id)


class SqliteEventRepository(EventRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def append(self, row: EventRow) -> None:
        self._session.add(row)
        self._session.flush()

    def list(self, kind: str | None = None, limit: int | None = None) -> Sequence[EventRow]:
        stmt = select(EventRow)
        if kind is not None:
            stmt = stmt.where(EventRow.kind == kind)
        stmt = stmt.order_by(EventRow.created_at, EventRow.event_id)
        rows = list(self._session.execute(stmt).scalars().all())
        if limit is not None:
            rows = rows[-limit:]
        return rows


class SqliteRequestRepository(RequestRepository):
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, request_id: str) -> RequestRow | None:
        return self._session.get(RequestRow, request_id)

    def save(self, row: RequestRow) -> None:
        self._session.add(row)
        self._session.flush()


@dataclass
class Repositories:
    """All repositories bound to one session (one unit of work)."""

    session: Session
    blobs: SqliteBlobRepository
    commits: SqliteCommitRepository
    parents: SqliteCommitParentRepository
    changes: SqliteChangeRepository
    tracks: SqliteTrackRepository
    environments: SqliteEnvironmentRepository
    live: SqliteLiveStateRepository
    snapshots: SqliteSnapshotRepository
    jobs: SqliteJobRepository
    drift: SqliteDriftRepository
    conflicts: SqliteConflictRepository
    retrofits: SqliteRetrofitRepository
    events: SqliteEventRepository
    requests: SqliteRequestRepository
    after_commit: list[Callable[[], None]] = field(default_factory=list)

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the unit of work has committed."""
        self.after_commit.append(callback)

    @classmethod
    def for_session(cls, session: Session) -> Repositories:
        return cls(
            session=session,
            blobs=SqliteBlobRepository(session),
            commits=SqliteCommitRepository(session),
            parents=SqliteCommitParentRepository(session),
            changes=SqliteChangeRepository(session),
            tracks=SqliteTrackRepository(session),
            environments=SqliteEnvironmentRepository(session),
            live=SqliteLiveStateRepository(session),
            snapshots=SqliteSnapshotRepository(session),
            jobs=SqliteJobRepository(session),
            drift=SqliteDriftRepository(session),
            conflicts=SqliteConflictRepository(session),
            retrofits=SqliteRetrofitRepository(session),
            events=SqliteEventRepository(session),
            requests=SqliteRequestRepository(session),
        )
