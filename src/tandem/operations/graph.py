"""Branch/commit graph for Tandem.

CommitGraph is the only writer of commits and track heads.  Commits are
immutable; a track head only moves forward along the DAG.  Artifact states
are materialized by replaying the first-parent chain and memoized in an
LRU cache keyed by commit hash.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from tandem.engine.hashing import commit_hash as compute_commit_hash
from tandem.engine.structure import State, apply_changes, check_changes
from tandem.exceptions import (
    CommitNotFoundError,
    InvalidChangeSetError,
    NonLinearAdvanceError,
    TrackExistsError,
    TrackNotFoundError,
)
from tandem.models.artifact import ArtifactKey
from tandem.models.commit import ArtifactChange, ChangeKind, CommitInfo, CommitKind
from tandem.models.track import TrackInfo, TrackRole
from tandem.operations.dag import get_all_ancestors, is_ancestor
from tandem.storage.schema import ArtifactChangeRow, CommitRow, TrackRow
from tandem.storage.sqlite import as_utc

if TYPE_CHECKING:
    from tandem.storage.sqlite import Repositories

logger = logging.getLogger(__name__)


class StateCache:
    """LRU cache of materialized states keyed by commit hash.

    Commits are immutable, so entries never need invalidation.  Shared
    across units of work; callers hold the store lock.  Artifacts are
    copied in and out so no caller holds an object the cache also holds.
    """

    def __init__(self, maxsize: int = 32) -> None:
        self._cache: OrderedDict[str, State] = OrderedDict()
        self._maxsize = maxsize

    def get(self, commit_hash: str) -> State | None:
        if commit_hash not in self._cache:
            logger.debug("State cache miss: %s", commit_hash[:12])
            return None
        self._cache.move_to_end(commit_hash)
        logger.debug("State cache hit: %s", commit_hash[:12])
        return _copy_state(self._cache[commit_hash])

    def put(self, commit_hash: str, state: State) -> None:
        if commit_hash in self._cache:
            self._cache.move_to_end(commit_hash)
        self._cache[commit_hash] = _copy_state(state)
        while len(self._cache) > self._maxsize:
            self._cache.popitem(last=False)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


def _copy_state(state: State) -> State:
    return {key: artifact.model_copy(deep=True) for key, artifact in state.items()}


def row_to_track(row: TrackRow) -> TrackInfo:
    return TrackInfo(
        name=row.name,
        role=row.role,
        head=row.head_hash,
        environment=row.environment,
        created_at=as_utc(row.created_at),
    )


class CommitGraph:
    """Commit creation, head advancement and ancestry queries."""

    def __init__(self, repos: Repositories, cache: StateCache | None = None) -> None:
        self._repos = repos
        self._cache = cache if cache is not None else StateCache()

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    def create_track(
        self,
        name: str,
        role: TrackRole,
        *,
        from_track: str | None = None,
        environment: str | None = None,
    ) -> TrackInfo:
        """Create a track, empty or forked at another track's head."""
        if self._repos.tracks.get(name) is not None:
            raise TrackExistsError(name)
        head = self.head(from_track) if from_track is not None else None
        row = TrackRow(
            name=name,
            role=TrackRole(role),
            head_hash=head,
            environment=environment,
            created_at=datetime.now(timezone.utc),
        )
        self._repos.tracks.save(row)
        logger.info("Created %s track '%s' at %s", row.role, name, (head or "<empty>")[:12])
        return row_to_track(row)

    def get_track(self, name: str) -> TrackInfo:
        return row_to_track(self._track_row(name))

    def head(self, track: str) -> str | None:
        return self._track_row(track).head_hash

    def _track_row(self, name: str) -> TrackRow:
        row = self._repos.tracks.get(name)
        if row is None:
            raise TrackNotFoundError(name)
        return row

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def create_commit(
        self,
        track: str,
        changes: list[ArtifactChange],
        parents: Optional[list[str]] = None,
        *,
        kind: CommitKind = CommitKind.NORMAL,
        message: str | None = None,
        author: str | None = None,
        metadata: dict | None = None,
    ) -> CommitInfo:
        """Create an immutable commit.  Does not move any track head.

        Args:
            track: Track the commit is authored on.
            changes: Ordered change list, validated against the first
                parent's state.
            parents: Parent commit ids, first parent first.  Defaults to
                the track's current head.
            kind: NORMAL, MERGE or PARTIAL.

        Raises:
            TrackNotFoundError: If the track does not exist.
            CommitNotFoundError: If a parent does not exist.
            InvalidChangeSetError: If the change list is invalid.
        """
        track_row = self._track_row(track)
        if parents is None:
            parents = [track_row.head_hash] if track_row.head_hash else []
        for parent in parents:
            if self._repos.commits.get(parent) is None:
                raise CommitNotFoundError(parent)
        if len(set(parents)) != len(parents):
            raise InvalidChangeSetError("A commit cannot list the same parent twice")
        if not changes and kind == CommitKind.NORMAL:
            raise InvalidChangeSetError("A commit must change at least one artifact")

        base_state = self.materialize(parents[0] if parents else None)
        check_changes(base_state, changes)

        now = datetime.now(timezone.utc)
        descriptors = []
        for change in changes:
            c_hash = (
                self._repos.blobs.put(change.artifact)
                if change.artifact is not None
                else None
            )
            descriptors.append(
                {"kind": change.kind.value, "key": str(change.key), "content_hash": c_hash}
            )
        c_id = compute_commit_hash(track, parents, descriptors, now.isoformat(), message)

        self._repos.commits.save(
            CommitRow(
                commit_hash=c_id,
                track=track,
                parent_hash=parents[0] if parents else None,
                kind=kind,
                message=message,
                author=author,
                metadata_json=metadata,
                created_at=now,
            )
        )
        for position, (change, desc) in enumerate(zip(changes, descriptors)):
            self._repos.changes.add(
                ArtifactChangeRow(
                    commit_hash=c_id,
                    position=position,
                    change_kind=change.kind,
                    artifact_type=change.key.type,
                    artifact_name=change.key.name,
                    content_hash=desc["content_hash"],
                )
            )
        if len(parents) > 1:
            self._repos.parents.add_parents(c_id, parents)

        self._cache.put(c_id, apply_changes(base_state, changes))
        logger.info(
            "Created %s commit %s on '%s' (%d changes)", kind, c_id[:12], track, len(changes)
        )
        return CommitInfo(
            commit_hash=c_id,
            track=track,
            parents=list(parents),
            kind=kind,
            changes=list(changes),
            message=message,
            author=author,
            metadata=metadata,
            created_at=now,
        )

    def advance(self, track: str, commit_hash: str) -> None:
        """Move a track head forward.

        Raises:
            NonLinearAdvanceError: If ``commit_hash`` does not descend from
                the current head.
        """
        row = self._track_row(track)
        if self._repos.commits.get(commit_hash) is None:
            raise CommitNotFoundError(commit_hash)
        head = row.head_hash
        if head is not None and not self.is_ancestor(head, commit_hash):
            raise NonLinearAdvanceError(track, head, commit_hash)
        self._repos.tracks.set_head(track, commit_hash)
        logger.debug("Advanced '%s' %s -> %s", track, (head or "")[:12], commit_hash[:12])

    def ancestors_of(self, commit_hash: str) -> set[str]:
        """All ancestors of a commit, including itself."""
        return get_all_ancestors(commit_hash, self._repos.commits, self._repos.parents)

    def is_ancestor(self, a: str, b: str) -> bool:
        """True if ``a`` is ``b`` or reachable from ``b`` through parents."""
        return is_ancestor(self._repos.commits, self._repos.parents, a, b)

    def get_commit(self, commit_hash: str) -> CommitInfo:
        """Load a commit by full hash or unique prefix."""
        row = self._repos.commits.get(commit_hash)
        if row is None and len(commit_hash) >= 4:
            row = self._repos.commits.get_by_prefix(commit_hash)
        if row is None:
            raise CommitNotFoundError(commit_hash)
        return self._row_to_info(row)

    def log(self, track: str, limit: int | None = None) -> list[CommitInfo]:
        """First-parent history of a track, newest first."""
        head = self.head(track)
        if head is None:
            return []
        chain = self._repos.commits.get_first_parent_chain(head)
        if limit is not None:
            chain = chain[:limit]
        return [self._row_to_info(row) for row in chain]

    def materialize(self, commit_hash: str | None) -> State:
        """The full artifact state at a commit (empty for ``None``).

        Returns a fresh dict; callers may mutate it.
        """
        if commit_hash is None:
            return {}
        cached = self._cache.get(commit_hash)
        if cached is not None:
            return dict(cached)

        # Walk back to the nearest cached ancestor, then replay forward.
        pending: list[str] = []
        state: State = {}
        current: str | None = commit_hash
        while current is not None:
            cached = self._cache.get(current)
            if cached is not None:
                state = dict(cached)
                break
            row = self._repos.commits.get(current)
            if row is None:
                raise CommitNotFoundError(current)
            pending.append(current)
            current = row.parent_hash
        for c_id in reversed(pending):
            state = apply_changes(state, self._load_changes(c_id))
        self._cache.put(commit_hash, state)
        return dict(state)

    def _load_changes(self, commit_hash: str) -> list[ArtifactChange]:
        changes: list[ArtifactChange] = []
        for row in self._repos.changes.get_for_commit(commit_hash):
            if row.change_kind == ChangeKind.DELETE:
                changes.append(
                    ArtifactChange.delete(
                        ArtifactKey(type=row.artifact_type, name=row.artifact_name)
                    )
                )
            else:
                artifact = self._repos.blobs.get(row.content_hash)
                changes.append(
                    ArtifactChange(kind=row.change_kind, key=artifact.key, artifact=artifact)
                )
        return changes

    def _row_to_info(self, row: CommitRow) -> CommitInfo:
        parents = self._repos.parents.get_parents(row.commit_hash)
        if not parents and row.parent_hash:
            parents = [row.parent_hash]
        return CommitInfo(
            commit_hash=row.commit_hash,
            track=row.track,
            parents=parents,
            kind=row.kind,
            changes=self._load_changes(row.commit_hash),
            message=row.message,
            author=row.author,
            metadata=row.metadata_json,
            created_at=as_utc(row.created_at),
        )
