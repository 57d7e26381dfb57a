"""Protocol definitions for Tandem.

Defines the pluggable boundaries of the engine:

- ``TargetAdapter``: reads and mutates the live artifact set of a
  deployment target.
- ``NotificationSink``: receives outbound events.

No SQLAlchemy imports allowed in this module -- pure domain protocols.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from tandem.models.artifact import Artifact, ArtifactKey
    from tandem.models.commit import ArtifactChange
    from tandem.models.events import Event


@runtime_checkable
class TargetAdapter(Protocol):
    """Protocol for a live deployment target.

    ``apply`` raises ``DeployFailedError`` (or any exception) on failure;
    the orchestrator then calls ``restore`` exactly once with the
    pre-deploy snapshot.
    """

    def read(self, env_id: str) -> dict[ArtifactKey, Artifact]:
        """The live artifact set of an environment."""
        ...

    def validate(
        self,
        env_id: str,
        changes: list[ArtifactChange],
        target_state: dict[ArtifactKey, Artifact],
    ) -> list[str]:
        """Dry-run ``changes``.  Returns a list of problems (empty when ok)."""
        ...

    def apply(self, env_id: str, changes: list[ArtifactChange]) -> None:
        """Apply changes to the live artifact set."""
        ...

    def restore(self, env_id: str, snapshot: dict[ArtifactKey, Artifact]) -> None:
        """Replace the live artifact set with a snapshot."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Protocol for consumers of outbound events."""

    def notify(self, event: Event) -> None:
        """Handle one event.  Exceptions are logged and do not propagate."""
        ...
