"""Built-in target adapters.

``DatabaseTarget`` keeps each environment's live artifact set in the
``live_artifacts`` table, which makes live state durable across restarts
and lets tests and the CLI simulate manual edits to a target.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tandem.models.artifact import Artifact, ArtifactKey
from tandem.models.commit import ArtifactChange, ChangeKind

if TYPE_CHECKING:
    from tandem.storage.store import Store

logger = logging.getLogger(__name__)


class DatabaseTarget:
    """Live state stored in the Tandem database itself."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def read(self, env_id: str) -> dict[ArtifactKey, Artifact]:
        with self._store.unit_of_work() as repos:
            return {
                key: repos.blobs.get(c_hash)
                for key, c_hash in repos.live.read(env_id).items()
            }

    def validate(
        self,
        env_id: str,
        changes: list[ArtifactChange],
        target_state: dict[ArtifactKey, Artifact],
    ) -> list[str]:
        return []

    def apply(self, env_id: str, changes: list[ArtifactChange]) -> None:
        with self._store.unit_of_work() as repos:
            for change in changes:
                if change.kind == ChangeKind.DELETE:
                    repos.live.remove(env_id, change.key)
                else:
                    repos.live.put(env_id, change.key, repos.blobs.put(change.artifact))
        logger.debug("Applied %d changes to %s", len(changes), env_id)

    def restore(self, env_id: str, snapshot: dict[ArtifactKey, Artifact]) -> None:
        with self._store.unit_of_work() as repos:
            repos.live.replace_all(
                env_id, {key: repos.blobs.put(a) for key, a in snapshot.items()}
            )
        logger.debug("Restored %d artifacts to %s", len(snapshot), env_id)
