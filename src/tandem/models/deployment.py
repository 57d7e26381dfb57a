"""Deployment job domain models for Tandem.

A DeploymentJob walks the state machine below; every edge taken is
recorded as a JobTransition.

    pending -> validating -> validated -> deploying -> deployed
                  |                          |
                  v                          v
         validation_failed            deploy_failed -> rolling_back
                                                          |
                                              rolled_back / rollback_failed

``pending``, ``validating`` and ``validated`` may also move to ``cancelled``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from tandem.exceptions import DeployFailedError, RollbackFailedError, ValidationFailedError
from tandem.models.artifact import ArtifactKey


class JobState(str, enum.Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    VALIDATED = "validated"
    VALIDATION_FAILED = "validation_failed"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    DEPLOY_FAILED = "deploy_failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    CANCELLED = "cancelled"

    def __repr__(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


VALID_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.VALIDATING, JobState.CANCELLED},
    JobState.VALIDATING: {
        JobState.VALIDATED,
        JobState.VALIDATION_FAILED,
        JobState.CANCELLED,
    },
    JobState.VALIDATED: {JobState.DEPLOYING, JobState.CANCELLED},
    JobState.DEPLOYING: {JobState.DEPLOYED, JobState.DEPLOY_FAILED},
    JobState.DEPLOY_FAILED: {JobState.ROLLING_BACK},
    JobState.ROLLING_BACK: {JobState.ROLLED_BACK, JobState.ROLLBACK_FAILED},
    JobState.DEPLOYED: set(),  # terminal
    JobState.VALIDATION_FAILED: set(),  # terminal
    JobState.ROLLED_BACK: set(),  # terminal
    JobState.ROLLBACK_FAILED: set(),  # terminal, human escalation only
    JobState.CANCELLED: set(),  # terminal
}

TERMINAL_STATES: frozenset[JobState] = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)

# States in which no mutation of the target has happened yet.
CANCELLABLE_STATES: frozenset[JobState] = frozenset(
    {JobState.PENDING, JobState.VALIDATING, JobState.VALIDATED}
)


class JobTransition(BaseModel):
    from_state: Optional[JobState] = None
    to_state: JobState
    at: datetime
    detail: Optional[str] = None


class DeploymentJob(BaseModel):
    """One promotion attempt of a commit into an environment.

    Immutable once terminal.
    """

    job_id: str
    env_id: str
    track: str
    commit_hash: str
    state: JobState = JobState.PENDING
    snapshot_id: Optional[str] = None
    overwrite_drift: bool = False
    planned_keys: list[ArtifactKey] = []
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    transitions: list[JobTransition] = []

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def raise_for_state(self) -> None:
        """Raise the matching error if the job ended in a failure state."""
        if self.state == JobState.VALIDATION_FAILED:
            raise ValidationFailedError(self.job_id, (self.error or "").split("; "))
        if self.state == JobState.ROLLED_BACK:
            raise DeployFailedError(
                f"Deployment {self.job_id} to '{self.env_id}' failed and was rolled back: {self.error}"
            )
        if self.state == JobState.ROLLBACK_FAILED:
            raise RollbackFailedError(self.job_id, self.env_id, self.error or "unknown")

    def __repr__(self) -> str:
        return (
            f"DeploymentJob({self.job_id[:8]} {self.env_id} "
            f"{self.commit_hash[:8]} {self.state.value})"
        )
