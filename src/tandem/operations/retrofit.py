"""Retrofit: ancestry-preserving merge of one track into another.

Merges are three-way against the nearest common ancestor of the two
heads and always produce a two-parent commit ``(target head, source
head)``; a change is never replayed as an unrelated commit.  Once a source
commit is an ancestor of the target head, retrofitting it again is a
no-op.

Conflicting artifacts open a ConflictSet and leave the target head where
it was.  Under ``MergePolicy.PARTIAL`` the clean part of the merge is
persisted as a partial commit; under ``MergePolicy.ATOMIC`` nothing but
the conflict set is written.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from tandem.engine.structure import diff_states, merge_states
from tandem.exceptions import (
    ConflictSetClosedError,
    ConflictSetNotFoundError,
    InvalidChangeSetError,
    StaleConflictSetError,
    UnresolvedConflictError,
)
from tandem.models.artifact import ArtifactKey
from tandem.models.commit import CommitKind
from tandem.models.events import MergeConflictDetected
from tandem.models.merge import (
    ConflictEntry,
    ConflictSet,
    ConflictSetStatus,
    MergePolicy,
    MergeResult,
    Resolution,
)
from tandem.operations.dag import find_merge_base
from tandem.storage.schema import ConflictEntryRow, ConflictSetRow, RetrofitRow
from tandem.storage.sqlite import as_utc

if TYPE_CHECKING:
    from tandem.engine.structure import State
    from tandem.operations.graph import CommitGraph
    from tandem.operations.outbox import EventBus
    from tandem.storage.sqlite import Repositories

logger = logging.getLogger(__name__)


def row_to_conflict_set(row: ConflictSetRow, entries: list[ConflictEntryRow]) -> ConflictSet:
    return ConflictSet(
        conflict_set_id=row.conflict_set_id,
        source_track=row.source_track,
        target_track=row.target_track,
        source_head=row.source_head,
        target_head=row.target_head,
        base_hash=row.base_hash,
        policy=row.policy,
        status=row.status,
        partial_commit=row.partial_commit,
        merge_commit=row.merge_commit,
        entries=[ConflictEntry.model_validate(e.entry_json) for e in entries],
        created_at=as_utc(row.created_at),
        resolved_at=as_utc(row.resolved_at),
    )


def load_conflict_set(repos: Repositories, conflict_set_id: str) -> ConflictSet:
    row = repos.conflicts.get(conflict_set_id)
    if row is None:
        raise ConflictSetNotFoundError(conflict_set_id)
    return row_to_conflict_set(row, list(repos.conflicts.get_entries(conflict_set_id)))


def _save_result(repos: Repositories, result: MergeResult) -> MergeResult:
    repos.retrofits.save(
        RetrofitRow(
            retrofit_id=result.retrofit_id,
            source_track=result.source_track,
            target_track=result.target_track,
            status=result.status,
            source_head=result.source_head,
            target_head=result.target_head,
            base_hash=result.base_hash,
            merge_commit=result.merge_commit,
            partial_commit=result.partial_commit,
            conflict_set_id=(
                result.conflict_set.conflict_set_id if result.conflict_set else None
            ),
            merged_keys_json=[str(k) for k in result.merged_keys],
            created_at=result.created_at,
        )
    )
    return result


def load_retrofit(repos: Repositories, retrofit_id: str) -> MergeResult | None:
    row = repos.retrofits.get(retrofit_id)
    if row is None:
        return None
    return MergeResult(
        retrofit_id=row.retrofit_id,
        status=row.status,
        source_track=row.source_track,
        target_track=row.target_track,
        source_head=row.source_head,
        target_head=row.target_head,
        base_hash=row.base_hash,
        merge_commit=row.merge_commit,
        partial_commit=row.partial_commit,
        conflict_set=(
            load_conflict_set(repos, row.conflict_set_id) if row.conflict_set_id else None
        ),
        merged_keys=[ArtifactKey.parse(k) for k in row.merged_keys_json or []],
        created_at=as_utc(row.created_at),
    )


def _supersede_open(repos: Repositories, source_track: str, target_track: str) -> None:
    for row in repos.conflicts.find(
        source_track=source_track,
        target_track=target_track,
        status=ConflictSetStatus.OPEN,
    ):
        row.status = ConflictSetStatus.SUPERSEDED
        logger.info("Conflict set %s superseded by a new retrofit", row.conflict_set_id[:12])
    repos.session.flush()


def retrofit(
    repos: Repositories,
    graph: CommitGraph,
    bus: EventBus,
    source_track: str,
    target_track: str,
    *,
    policy: MergePolicy = MergePolicy.PARTIAL,
    author: str | None = None,
) -> MergeResult:
    """Merge ``source_track`` into ``target_track``.

    The caller holds the target track lock.  Raises before writing
    anything if either track is missing, so a failed retrofit leaves both
    tracks untouched.
    """
    now = datetime.now(timezone.utc)
    source_head = graph.head(source_track)
    target_head = graph.head(target_track)
    result = MergeResult(
        retrofit_id=uuid.uuid4().hex,
        status="up_to_date",
        source_track=source_track,
        target_track=target_track,
        source_head=source_head,
        target_head=target_head,
        created_at=now,
    )

    if source_head is None or (
        target_head is not None and graph.is_ancestor(source_head, target_head)
    ):
        logger.info("Retrofit %s -> %s: up to date", source_track, target_track)
        return _save_result(repos, result)

    message = f"Retrofit '{source_track}' into '{target_track}'"
    if target_head is None:
        # Empty target: adopt the source history through a merge commit.
        commit = graph.create_commit(
            target_track, [], [source_head], kind=CommitKind.MERGE, message=message, author=author
        )
        graph.advance(target_track, commit.commit_hash)
        result.status = "merged"
        result.merge_commit = commit.commit_hash
        result.merged_keys = sorted(graph.materialize(source_head))
        logger.info("Retrofit %s -> %s: adopted %s", source_track, target_track, source_head[:12])
        return _save_result(repos, result)

    base_hash = find_merge_base(repos.commits, repos.parents, target_head, source_head)
    result.base_hash = base_hash
    ours = graph.materialize(target_head)
    merge = merge_states(graph.materialize(base_hash), ours, graph.materialize(source_head))
    result.merged_keys = merge.merged_keys
    changes = diff_states(ours, merge.merged)
    parents = [target_head, source_head]

    _supersede_open(repos, source_track, target_track)

    if merge.clean:
        commit = graph.create_commit(
            target_track, changes, parents, kind=CommitKind.MERGE, message=message, author=author
        )
        graph.advance(target_track, commit.commit_hash)
        result.status = "merged"
        result.merge_commit = commit.commit_hash
        logger.info(
            "Retrofit %s -> %s: merged %d artifact(s) in %s",
            source_track,
            target_track,
            len(merge.merged_keys),
            commit.commit_hash[:12],
        )
        return _save_result(repos, result)

    partial_hash = None
    if policy == MergePolicy.PARTIAL and changes:
        partial = graph.create_commit(
            target_track,
            changes,
            parents,
            kind=CommitKind.PARTIAL,
            message=f"{message} (partial)",
            author=author,
        )
        partial_hash = partial.commit_hash

    cs_row = ConflictSetRow(
        conflict_set_id=uuid.uuid4().hex,
        source_track=source_track,
        target_track=target_track,
        source_head=source_head,
        target_head=target_head,
        base_hash=base_hash,
        policy=policy,
        status=ConflictSetStatus.OPEN,
        partial_commit=partial_hash,
        created_at=now,
    )
    repos.conflicts.save(
        cs_row,
        [
            ConflictEntryRow(
                conflict_set_id=cs_row.conflict_set_id,
                position=i,
                artifact_type=entry.key.type,
                artifact_name=entry.key.name,
                entry_json=entry.model_dump(mode="json"),
            )
            for i, entry in enumerate(merge.conflicts)
        ],
    )
    conflict_set = row_to_conflict_set(cs_row, list(repos.conflicts.get_entries(cs_row.conflict_set_id)))
    bus.emit(
        repos,
        MergeConflictDetected(
            conflict_set_id=cs_row.conflict_set_id,
            source_track=source_track,
            target_track=target_track,
            keys=[str(k) for k in conflict_set.keys()],
        ),
    )
    logger.warning(
        "Retrofit %s -> %s: %d conflict(s) in set %s (%s)",
        source_track,
        target_track,
        len(merge.conflicts),
        cs_row.conflict_set_id[:12],
        policy,
    )
    result.status = "conflict"
    result.partial_commit = partial_hash
    result.conflict_set = conflict_set
    return _save_result(repos, result)


def supersede_if_stale(repos: Repositories, graph: CommitGraph, conflict_set_id: str) -> bool:
    """Mark an open conflict set superseded if its target head moved."""
    row = repos.conflicts.get(conflict_set_id)
    if row is None:
        raise ConflictSetNotFoundError(conflict_set_id)
    if row.status != ConflictSetStatus.OPEN:
        return False
    if graph.head(row.target_track) == row.target_head:
        return False
    row.status = ConflictSetStatus.SUPERSEDED
    repos.session.flush()
    logger.warning(
        "Conflict set %s is stale: '%s' moved past %s",
        conflict_set_id[:12],
        row.target_track,
        row.target_head[:12],
    )
    return True


def _normalize(
    resolutions: dict[ArtifactKey | str, Resolution | str],
) -> dict[str, Resolution]:
    normalized: dict[str, Resolution] = {}
    for key, resolution in resolutions.items():
        if isinstance(resolution, str):
            resolution = Resolution(choice=resolution)
        normalized[str(key)] = resolution
    return normalized


def _resolved_state(
    conflict_set: ConflictSet,
    merged: State,
    ours: State,
    theirs: State,
    resolutions: dict[str, Resolution],
) -> State:
    state = dict(merged)
    for entry in conflict_set.entries:
        resolution = resolutions[str(entry.key)]
        if resolution.choice == "ours":
            chosen = ours.get(entry.key)
        elif resolution.choice == "theirs":
            chosen = theirs.get(entry.key)
        else:
            chosen = resolution.artifact
            if chosen is not None and chosen.key != entry.key:
                raise InvalidChangeSetError(
                    f"Custom resolution for {entry.key} carries artifact {chosen.key}"
                )
        if chosen is None:
            state.pop(entry.key, None)
        else:
            state[entry.key] = chosen
    return state


def resolve_conflict(
    repos: Repositories,
    graph: CommitGraph,
    conflict_set_id: str,
    resolutions: dict[ArtifactKey | str, Resolution | str],
    *,
    author: str | None = None,
) -> MergeResult:
    """Complete a conflicted retrofit with caller-supplied resolutions.

    The merge is recomputed from the heads recorded in the conflict set,
    the resolutions are applied to the conflicting artifacts, and a
    two-parent merge commit is advanced onto the target track.

    Raises:
        ConflictSetNotFoundError: Unknown id.
        ConflictSetClosedError: The set is resolved or superseded.
        StaleConflictSetError: The target head moved since detection.
        UnresolvedConflictError: An entry has no resolution.
    """
    row = repos.conflicts.get(conflict_set_id)
    if row is None:
        raise ConflictSetNotFoundError(conflict_set_id)
    if row.status != ConflictSetStatus.OPEN:
        raise ConflictSetClosedError(conflict_set_id, row.status.value)
    if graph.head(row.target_track) != row.target_head:
        raise StaleConflictSetError(conflict_set_id, row.target_track)

    conflict_set = row_to_conflict_set(row, list(repos.conflicts.get_entries(conflict_set_id)))
    normalized = _normalize(resolutions)
    wanted = {str(k) for k in conflict_set.keys()}
    missing = sorted(wanted - set(normalized))
    if missing:
        raise UnresolvedConflictError(conflict_set_id, missing)
    unknown = sorted(set(normalized) - wanted)
    if unknown:
        raise InvalidChangeSetError(
            f"Resolutions for artifacts not in conflict set {conflict_set_id}: {', '.join(unknown)}"
        )

    ours = graph.materialize(row.target_head)
    theirs = graph.materialize(row.source_head)
    merge = merge_states(graph.materialize(row.base_hash), ours, theirs)
    final = _resolved_state(conflict_set, merge.merged, ours, theirs, normalized)
    changes = diff_states(ours, final)

    metadata: dict = {"conflict_set_id": conflict_set_id}
    if row.partial_commit:
        metadata["partial_commit"] = row.partial_commit
    commit = graph.create_commit(
        row.target_track,
        changes,
        [row.target_head, row.source_head],
        kind=CommitKind.MERGE,
        message=f"Retrofit '{row.source_track}' into '{row.target_track}' (resolved)",
        author=author,
        metadata=metadata,
    )
    graph.advance(row.target_track, commit.commit_hash)

    now = datetime.now(timezone.utc)
    row.status = ConflictSetStatus.RESOLVED
    row.merge_commit = commit.commit_hash
    row.resolved_at = now
    repos.session.flush()
    logger.info(
        "Conflict set %s resolved with merge commit %s",
        conflict_set_id[:12],
        commit.commit_hash[:12],
    )

    result = MergeResult(
        retrofit_id=uuid.uuid4().hex,
        status="merged",
        source_track=row.source_track,
        target_track=row.target_track,
        source_head=row.source_head,
        target_head=row.target_head,
        base_hash=row.base_hash,
        merge_commit=commit.commit_hash,
        partial_commit=row.partial_commit,
        conflict_set=row_to_conflict_set(row, list(repos.conflicts.get_entries(conflict_set_id))),
        merged_keys=[c.key for c in changes],
        created_at=now,
    )
    return _save_result(repos, result)
