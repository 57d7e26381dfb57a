"""Ancestry queries over the commit DAG.

A commit's parents are its first parent (``CommitRow.parent_hash``) plus,
for merge and partial commits, the ordered ``commit_parents`` rows.  Every
walk here is breadth first and visits each commit once.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from typing import TYPE_CHECKING

from tandem.models.commit import CommitKind

if TYPE_CHECKING:
    from tandem.storage.repositories import CommitParentRepository, CommitRepository
    from tandem.storage.schema import CommitRow


def parents_of(
    commit_hash: str,
    commit_repo: CommitRepository,
    parent_repo: CommitParentRepository | None,
) -> list[str]:
    """Parents of a commit, first parent first.  Empty for a root or unknown commit."""
    if parent_repo is not None:
        extra = parent_repo.get_parents(commit_hash)
        if extra:
            return list(extra)
    row = commit_repo.get(commit_hash)
    return [row.parent_hash] if row is not None and row.parent_hash else []


def walk_ancestors(
    start: str,
    commit_repo: CommitRepository,
    parent_repo: CommitParentRepository | None,
    *,
    stop_at: set[str] | None = None,
) -> Iterator[str]:
    """Yield ``start`` and its ancestors, nearest first.

    Commits in ``stop_at`` are yielded but not expanded.
    """
    seen = {start}
    pending: deque[str] = deque([start])
    while pending:
        current = pending.popleft()
        yield current
        if stop_at and current in stop_at:
            continue
        for parent in parents_of(current, commit_repo, parent_repo):
            if parent not in seen:
                seen.add(parent)
                pending.append(parent)


def find_merge_base(
    commit_repo: CommitRepository,
    parent_repo: CommitParentRepository | None,
    hash_a: str,
    hash_b: str,
) -> str | None:
    """Nearest common ancestor of two commits, seen from ``hash_b``.

    After an earlier retrofit this is the source head that was merged
    last.  Returns None when the histories are unrelated.
    """
    reachable_from_a = set(walk_ancestors(hash_a, commit_repo, parent_repo))
    return next(
        (h for h in walk_ancestors(hash_b, commit_repo, parent_repo) if h in reachable_from_a),
        None,
    )


def get_all_ancestors(
    commit_hash: str,
    commit_repo: CommitRepository,
    parent_repo: CommitParentRepository | None,
    *,
    stop_at: set[str] | None = None,
) -> set[str]:
    """Every ancestor hash of a commit, including itself."""
    return set(walk_ancestors(commit_hash, commit_repo, parent_repo, stop_at=stop_at))


def get_unmerged_commits(
    commit_repo: CommitRepository,
    parent_repo: CommitParentRepository | None,
    source_head: str,
    target_head: str | None,
) -> list[CommitRow]:
    """Commits reachable from ``source_head`` but not from ``target_head``.

    Merge and partial commits are skipped: only authored work counts
    toward retrofit lag.  Returned oldest first.
    """
    merged = (
        get_all_ancestors(target_head, commit_repo, parent_repo)
        if target_head is not None
        else set()
    )
    pending: list[CommitRow] = []
    for h in walk_ancestors(source_head, commit_repo, parent_repo, stop_at=merged):
        if h in merged:
            continue
        row = commit_repo.get(h)
        if row is None or row.kind != CommitKind.NORMAL:
            continue
        pending.append(row)
    pending.sort(key=lambda r: (r.created_at, r.commit_hash))
    return pending


def is_ancestor(
    commit_repo: CommitRepository,
    parent_repo: CommitParentRepository | None,
    potential_ancestor: str,
    commit_hash: str,
) -> bool:
    """True if ``potential_ancestor`` is ``commit_hash`` or one of its ancestors."""
    return any(
        h == potential_ancestor for h in walk_ancestors(commit_hash, commit_repo, parent_repo)
    )
