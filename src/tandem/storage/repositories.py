"""Abstract repository interfaces for Tandem storage.

Defines ABC interfaces for all database operations. No SQLAlchemy
imports here -- pure abstract contracts.

Concrete implementations are in sqlite.py.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from datetime import datetime

    from tandem.models.artifact import Artifact, ArtifactKey
    from tandem.models.deployment import JobState
    from tandem.models.merge import ConflictSetStatus
    from tandem.storage.schema import (
        ArtifactChangeRow,
        CommitRow,
        ConflictEntryRow,
        ConflictSetRow,
        DeploymentJobRow,
        DriftRecordRow,
        EnvironmentRow,
        EventRow,
        JobTransitionRow,
        RequestRow,
        RetrofitRow,
        SnapshotRow,
        TrackRow,
    )


class BlobRepository(ABC):
    """Content-addressed artifact payload storage."""

    @abstractmethod
    def put(self, artifact: Artifact) -> str:
        """Store an artifact if absent and return its content hash."""
        ...

    @abstractmethod
    def get(self, content_hash: str) -> Artifact:
        """Load an artifact.  Raises BlobNotFoundError if missing."""
        ...


class CommitRepository(ABC):
    """Abstract interface for commit storage operations."""

    @abstractmethod
    def get(self, commit_hash: str) -> CommitRow | None:
        """Get a commit by its hash. Returns None if not found."""
        ...

    @abstractmethod
    def save(self, commit: CommitRow) -> None:
        """Save a commit to storage."""
        ...

    @abstractmethod
    def get_by_prefix(self, prefix: str) -> CommitRow | None:
        """Find commit by hash prefix (min 4 chars).

        Raises ValueError if the prefix is ambiguous.
        """
        ...

    @abstractmethod
    def get_first_parent_chain(self, commit_hash: str) -> list[CommitRow]:
        """Commits from ``commit_hash`` back to the root along first parents.

        Returns newest first.
        """
        ...


class CommitParentRepository(ABC):
    """Abstract interface for multi-parent commit storage."""

    @abstractmethod
    def add_parents(self, commit_hash: str, parent_hashes: list[str]) -> None:
        ...

    @abstractmethod
    def get_parents(self, commit_hash: str) -> list[str]:
        """All recorded parents of a merge commit, in position order."""
        ...


class ChangeRepository(ABC):
    """Ordered change lists of commits."""

    @abstractmethod
    def add(self, row: ArtifactChangeRow) -> None:
        ...

    @abstractmethod
    def get_for_commit(self, commit_hash: str) -> Sequence[ArtifactChangeRow]:
        """Changes of a commit in position order."""
        ...


class TrackRepository(ABC):
    """Track head pointers, roles and environment bindings."""

    @abstractmethod
    def get(self, name: str) -> TrackRow | None:
        ...

    @abstractmethod
    def save(self, row: TrackRow) -> None:
        ...

    @abstractmethod
    def list(self) -> Sequence[TrackRow]:
        ...

    @abstractmethod
    def set_head(self, name: str, commit_hash: str) -> None:
        ...

    @abstractmethod
    def get_by_environment(self, env_id: str) -> TrackRow | None:
        """The track bound to an environment, if any."""
        ...


class EnvironmentRepository(ABC):
    """Environments and their last applied commit."""

    @abstractmethod
    def get(self, env_id: str) -> EnvironmentRow | None:
        ...

    @abstractmethod
    def save(self, row: EnvironmentRow) -> None:
        ...

    @abstractmethod
    def list(self) -> Sequence[EnvironmentRow]:
        ...


class LiveStateRepository(ABC):
    """The live artifact set of each environment."""

    @abstractmethod
    def read(self, env_id: str) -> dict[ArtifactKey, str]:
        """Map of live artifact key -> content hash."""
        ...

    @abstractmethod
    def put(self, env_id: str, key: ArtifactKey, content_hash: str) -> None:
        ...

    @abstractmethod
    def remove(self, env_id: str, key: ArtifactKey) -> bool:
        """Remove a live artifact.  Returns False if it was absent."""
        ...

    @abstractmethod
    def replace_all(self, env_id: str, entries: dict[ArtifactKey, str]) -> None:
        """Replace the whole live set (used for snapshot restore)."""
        ...


class SnapshotRepository(ABC):
    @abstractmethod
    def create(
        self,
        snapshot_id: str,
        env_id: str,
        job_id: str | None,
        entries: dict[ArtifactKey, str],
        created_at: datetime,
    ) -> SnapshotRow:
        ...

    @abstractmethod
    def get_entries(self, snapshot_id: str) -> dict[ArtifactKey, str] | None:
        """Snapshot contents, or None if the snapshot does not exist."""
        ...


class JobRepository(ABC):
    """Deployment jobs and their transition log."""

    @abstractmethod
    def get(self, job_id: str) -> DeploymentJobRow | None:
        ...

    @abstractmethod
    def save(self, row: DeploymentJobRow) -> None:
        ...

    @abstractmethod
    def get_active(self, env_id: str) -> DeploymentJobRow | None:
        """The non-terminal job of an environment, if any."""
        ...

    @abstractmethod
    def list(
        self, env_id: str | None = None, states: set[JobState] | None = None
    ) -> Sequence[DeploymentJobRow]:
        """Jobs ordered by creation time."""
        ...

    @abstractmethod
    def add_transition(self, row: JobTransitionRow) -> None:
        ...

    @abstractmethod
    def get_transitions(self, job_id: str) -> Sequence[JobTransitionRow]:
        ...


class DriftRepository(ABC):
    @abstractmethod
    def get_open(self, env_id: str) -> Sequence[DriftRecordRow]:
        ...

    @abstractmethod
    def save(self, row: DriftRecordRow) -> None:
        ...

    @abstractmethod
    def list(self, env_id: str, *, include_resolved: bool = False) -> Sequence[DriftRecordRow]:
        ...


class ConflictRepository(ABC):
    @abstractmethod
    def get(self, conflict_set_id: str) -> ConflictSetRow | None:
        ...

    @abstractmethod
    def save(self, row: ConflictSetRow, entries: list[ConflictEntryRow]) -> None:
        ...

    @abstractmethod
    def get_entries(self, conflict_set_id: str) -> Sequence[ConflictEntryRow]:
        ...

    @abstractmethod
    def find(
        self,
        *,
        source_track: str | None = None,
        target_track: str | None = None,
        status: ConflictSetStatus | None = None,
    ) -> Sequence[ConflictSetRow]:
        ...


class RetrofitRepository(ABC):
    @abstractmethod
    def save(self, row: RetrofitRow) -> None:
        ...

    @abstractmethod
    def get(self, retrofit_id: str) -> RetrofitRow | None:
        ...


class EventRepository(ABC):
    @abstractmethod
    def append(self, row: EventRow) -> None:
        ...

    @abstractmethod
    def list(self, kind: str | None = None, limit: int | None = None) -> Sequence[EventRow]:
        """Events oldest first."""
        ...


class RequestRepository(ABC):
    @abstractmethod
    def get(self, request_id: str) -> RequestRow | None:
        ...

    @abstractmethod
    def save(self, row: RequestRow) -> None:
        ...
