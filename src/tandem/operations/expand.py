"""Dependency expansion of a deployment's changed-artifact set.

Artifacts reference each other (a container referencing a child, a
permission referencing a field).  A change must travel with the artifacts
on either end of those references when the target does not already hold
their new version.  Expansion walks the reference graph breadth first from
the changed artifacts, at most ``max_hops`` edges deep.  Artifacts whose
type is excluded, or that carry ``exclude_from_expansion``, are never
pulled in and never walked through.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tandem.engine.structure import artifacts_equal

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tandem.engine.structure import State
    from tandem.models.artifact import ArtifactKey

logger = logging.getLogger(__name__)


@dataclass
class Expansion:
    """Seeds plus the artifacts pulled in, with their hop distance."""

    seeds: list[ArtifactKey]
    pulled: dict[ArtifactKey, int] = field(default_factory=dict)

    @property
    def keys(self) -> list[ArtifactKey]:
        return sorted(set(self.seeds) | set(self.pulled))


def reference_index(*states: State) -> dict[ArtifactKey, set[ArtifactKey]]:
    """Undirected adjacency of the reference graph across ``states``."""
    index: dict[ArtifactKey, set[ArtifactKey]] = {}
    for state in states:
        for key, artifact in state.items():
            for target in artifact.references():
                if target == key:
                    continue
                index.setdefault(key, set()).add(target)
                index.setdefault(target, set()).add(key)
    return index


def is_excluded(key: ArtifactKey, state: State, excluded_types: set[str]) -> bool:
    if key.type in excluded_types:
        return True
    artifact = state.get(key)
    return artifact is not None and artifact.exclude_from_expansion


def expand(
    seeds: Iterable[ArtifactKey],
    target_state: State,
    live_state: State,
    *,
    max_hops: int,
    excluded_types: set[str] | None = None,
    base_state: State | None = None,
) -> Expansion:
    """Compute the closure of ``seeds`` that must deploy together.

    A neighbour is pulled in when its version in ``target_state`` differs
    from ``live_state``; neighbours the target already holds end the walk
    along that edge.  ``base_state`` (the last applied state) contributes
    references of artifacts deleted by the change.

    Returns:
        An Expansion whose ``keys`` is a superset of ``seeds``.
    """
    excluded_types = excluded_types or set()
    seed_list = sorted(set(seeds))
    result = Expansion(seeds=seed_list)
    index = reference_index(target_state, *([base_state] if base_state else []))

    visited: set[ArtifactKey] = set(seed_list)
    queue: deque[tuple[ArtifactKey, int]] = deque((k, 0) for k in seed_list)
    while queue:
        key, hops = queue.popleft()
        if hops >= max_hops:
            continue
        for neighbour in sorted(index.get(key, ())):
            if neighbour in visited:
                continue
            visited.add(neighbour)
            if is_excluded(neighbour, target_state, excluded_types) or is_excluded(
                neighbour, live_state, excluded_types
            ):
                logger.debug("Expansion skips excluded %s", neighbour)
                continue
            if artifacts_equal(target_state.get(neighbour), live_state.get(neighbour)):
                continue
            result.pulled[neighbour] = hops + 1
            queue.append((neighbour, hops + 1))

    if result.pulled:
        logger.info(
            "Expanded %d changed artifact(s) with %d dependent(s): %s",
            len(seed_list),
            len(result.pulled),
            ", ".join(str(k) for k in sorted(result.pulled)),
        )
    return result
