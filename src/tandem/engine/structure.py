"""Structural diff and three-way merge of artifact states.

A *state* is the full artifact set at a commit: ``dict[ArtifactKey, Artifact]``.

The merge works region by region.  Two sides that change disjoint regions
of one artifact (different children of a container) merge cleanly; two
sides that change the same leaf or reference region differently produce a
conflict on that region.  Child order of an ordered container is its own
region, ``#order``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tandem.exceptions import InvalidChangeSetError
from tandem.models.artifact import (
    FLAG_REGION,
    ORDER_MARKER,
    Artifact,
    ArtifactKey,
    Container,
    Leaf,
    Reference,
    nodes_equal,
)
from tandem.models.commit import ArtifactChange, ChangeKind
from tandem.models.merge import ConflictEntry, SideChange

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

State = dict[ArtifactKey, Artifact]
_Node = Leaf | Reference | Container


def artifacts_equal(a: Artifact | None, b: Artifact | None) -> bool:
    """Structural equality where ``None`` means "absent"."""
    if a is None or b is None:
        return a is None and b is None
    return a.structurally_equal(b)


# ---------------------------------------------------------------------------
# Diff / apply
# ---------------------------------------------------------------------------


def diff_states(old: State, new: State) -> list[ArtifactChange]:
    """Changes that turn ``old`` into ``new``, sorted by artifact key."""
    changes: list[ArtifactChange] = []
    for key in sorted(set(old) | set(new)):
        before, after = old.get(key), new.get(key)
        if artifacts_equal(before, after):
            continue
        if before is None:
            changes.append(ArtifactChange.add(after))
        elif after is None:
            changes.append(ArtifactChange.delete(key))
        else:
            changes.append(ArtifactChange.modify(after))
    return changes


def check_changes(state: State, changes: Iterable[ArtifactChange]) -> None:
    """Validate a change list against the state it applies to.

    Raises:
        InvalidChangeSetError: On a duplicate key, an add of an existing
            artifact, a modify/delete of a missing one, or a modify that
            changes nothing.
    """
    seen: set[ArtifactKey] = set()
    problems: list[str] = []
    for change in changes:
        key = change.key
        if key in seen:
            problems.append(f"{key} appears more than once")
            continue
        seen.add(key)
        current = state.get(key)
        if change.kind == ChangeKind.ADD and current is not None:
            problems.append(f"add of existing artifact {key}")
        elif change.kind != ChangeKind.ADD and current is None:
            problems.append(f"{change.kind.value} of missing artifact {key}")
        elif change.kind == ChangeKind.MODIFY and artifacts_equal(current, change.artifact):
            problems.append(f"modify of {key} changes nothing")
    if problems:
        raise InvalidChangeSetError("Invalid change set: " + "; ".join(problems))


def apply_changes(state: State, changes: Iterable[ArtifactChange]) -> State:
    """Return a new state with ``changes`` applied (no validation)."""
    result = dict(state)
    for change in changes:
        if change.kind == ChangeKind.DELETE:
            result.pop(change.key, None)
        else:
            result[change.key] = change.artifact
    return result


def changed_regions(a: Artifact | None, b: Artifact | None) -> list[str]:
    """Region paths (``/``-joined) that differ between two versions."""
    if a is None or b is None:
        return [] if a is None and b is None else [""]
    regions: list[str] = []
    if a.exclude_from_expansion != b.exclude_from_expansion:
        regions.append(FLAG_REGION[0])
    _diff_nodes(a.body, b.body, (), regions)
    return regions


def _diff_nodes(a: _Node | None, b: _Node | None, path: tuple[str, ...], out: list[str]) -> None:
    if nodes_equal(a, b):
        return
    if isinstance(a, Container) and isinstance(b, Container) and a.ordered == b.ordered:
        for name in sorted(set(a.children) | set(b.children)):
            _diff_nodes(a.children.get(name), b.children.get(name), path + (name,), out)
        if a.ordered and _common_order(a, b) is None:
            out.append("/".join(path + (ORDER_MARKER,)))
        return
    out.append("/".join(path))


def _common_order(a: Container, b: Container) -> list[str] | None:
    """Relative order of shared children if both agree, else None."""
    shared = set(a.children) & set(b.children)
    oa = [n for n in a.children if n in shared]
    ob = [n for n in b.children if n in shared]
    return oa if oa == ob else None


# ---------------------------------------------------------------------------
# Three-way merge
# ---------------------------------------------------------------------------


@dataclass
class ArtifactMerge:
    """Result of merging one artifact.  ``artifact`` is None when the merged
    outcome is a deletion or when there are conflicts."""

    key: ArtifactKey
    artifact: Artifact | None = None
    conflicts: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.conflicts


@dataclass
class StateMerge:
    """Result of merging two states against their common base."""

    merged: State
    conflicts: list[ConflictEntry] = field(default_factory=list)
    merged_keys: list[ArtifactKey] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.conflicts


def side_change(base: Artifact | None, side: Artifact | None) -> SideChange:
    if base is None and side is None:
        return SideChange(change="unchanged")
    if base is None:
        return SideChange(change="added", artifact=side)
    if side is None:
        return SideChange(change="deleted")
    if artifacts_equal(base, side):
        return SideChange(change="unchanged", artifact=side)
    return SideChange(change="modified", artifact=side)


def merge_artifact(
    key: ArtifactKey,
    base: Artifact | None,
    ours: Artifact | None,
    theirs: Artifact | None,
) -> ArtifactMerge:
    """Three-way merge of one artifact."""
    if artifacts_equal(ours, theirs):
        return ArtifactMerge(key, ours)
    if artifacts_equal(base, ours):
        return ArtifactMerge(key, theirs)
    if artifacts_equal(base, theirs):
        return ArtifactMerge(key, ours)
    if ours is None or theirs is None:
        # delete on one side, modify on the other
        return ArtifactMerge(key, None, [""])

    conflicts: list[str] = []
    flag = ours.exclude_from_expansion
    if ours.exclude_from_expansion != theirs.exclude_from_expansion:
        if base is not None and base.exclude_from_expansion == ours.exclude_from_expansion:
            flag = theirs.exclude_from_expansion
        elif base is None or base.exclude_from_expansion != theirs.exclude_from_expansion:
            conflicts.append(FLAG_REGION[0])

    body = _merge_node(base.body if base is not None else None, ours.body, theirs.body, (), conflicts)
    if conflicts:
        return ArtifactMerge(key, None, conflicts)
    if not isinstance(body, Container):
        return ArtifactMerge(key, None, [""])
    return ArtifactMerge(
        key,
        Artifact(type=key.type, name=key.name, body=body, exclude_from_expansion=flag),
    )


def _merge_node(
    base: _Node | None,
    ours: _Node | None,
    theirs: _Node | None,
    path: tuple[str, ...],
    conflicts: list[str],
) -> _Node | None:
    if nodes_equal(ours, theirs):
        return ours
    if nodes_equal(base, ours):
        return theirs
    if nodes_equal(base, theirs):
        return ours
    if (
        isinstance(ours, Container)
        and isinstance(theirs, Container)
        and ours.ordered == theirs.ordered
        and (base is None or isinstance(base, Container))
    ):
        return _merge_container(base, ours, theirs, path, conflicts)
    conflicts.append("/".join(path))
    return None


def _merge_container(
    base: Container | None,
    ours: Container,
    theirs: Container,
    path: tuple[str, ...],
    conflicts: list[str],
) -> Container:
    base_children = base.children if base is not None else {}
    children: dict[str, _Node] = {}
    names = list(ours.children) + [n for n in theirs.children if n not in ours.children]
    for name in names:
        merged = _merge_node(
            base_children.get(name),
            ours.children.get(name),
            theirs.children.get(name),
            path + (name,),
            conflicts,
        )
        if merged is not None:
            children[name] = merged
    if ours.ordered:
        order = _merge_order(list(base_children), list(ours.children), list(theirs.children), set(children))
        if order is None:
            conflicts.append("/".join(path + (ORDER_MARKER,)))
        else:
            children = {name: children[name] for name in order}
    return Container(ordered=ours.ordered, children=children)


def _relative(seq: list[str], keep: set[str]) -> list[str]:
    return [n for n in seq if n in keep]


def _merge_order(
    base: list[str], ours: list[str], theirs: list[str], present: set[str]
) -> list[str] | None:
    """Merge child order of an ordered container.  None on an order conflict."""
    ours_moved = _relative(ours, set(base)) != _relative(base, set(ours))
    theirs_moved = _relative(theirs, set(base)) != _relative(base, set(theirs))
    if ours_moved and theirs_moved and _relative(ours, set(theirs)) != _relative(theirs, set(ours)):
        return None
    skeleton, other = (theirs, ours) if theirs_moved and not ours_moved else (ours, theirs)
    order = _relative(skeleton, present)
    for i, name in enumerate(other):
        if name not in present or name in order:
            continue
        predecessor = next((p for p in reversed(other[:i]) if p in order), None)
        order.insert(order.index(predecessor) + 1 if predecessor is not None else 0, name)
    return order


def merge_states(base: State, ours: State, theirs: State) -> StateMerge:
    """Three-way merge of two states.

    ``ours`` is the target side and the starting point of the result;
    every artifact touched on either side since ``base`` is merged.
    Conflicting artifacts keep the ``ours`` version in ``merged``.
    """
    merged: State = dict(ours)
    result = StateMerge(merged=merged)
    touched = {
        key
        for key in set(base) | set(ours) | set(theirs)
        if not artifacts_equal(base.get(key), ours.get(key))
        or not artifacts_equal(base.get(key), theirs.get(key))
    }
    for key in sorted(touched):
        b, o, t = base.get(key), ours.get(key), theirs.get(key)
        outcome = merge_artifact(key, b, o, t)
        if not outcome.clean:
            logger.debug("Conflict on %s at %s", key, outcome.conflicts)
            result.conflicts.append(
                ConflictEntry(
                    key=key,
                    regions=outcome.conflicts,
                    base=b,
                    ours=side_change(b, o),
                    theirs=side_change(b, t),
                )
            )
            continue
        if outcome.artifact is None:
            merged.pop(key, None)
        else:
            merged[key] = outcome.artifact
        if not artifacts_equal(o, outcome.artifact):
            result.merged_keys.append(key)
    return result
