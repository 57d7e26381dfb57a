"""Tandem exception hierarchy.

All Tandem-specific exceptions inherit from TandemError.  Every error
carries a ``context`` dict with the track/environment/commit ids of the
operation that raised it; :func:`operation_context` attaches those ids at
component boundaries.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class TandemError(Exception):
    """Base exception for all Tandem errors."""

    def __init__(self, *args: object) -> None:
        super().__init__(*args)
        self.context: dict[str, object] = {}

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{base} [{ctx}]"


class OperationError(TandemError):
    """Wraps a non-Tandem exception raised inside a component operation."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {type(cause).__name__}: {cause}")


# ---------------------------------------------------------------------------
# Lookup errors
# ---------------------------------------------------------------------------


class CommitNotFoundError(TandemError):
    """Raised when a commit id lookup fails."""

    def __init__(self, commit_hash: str) -> None:
        self.commit_hash = commit_hash
        super().__init__(f"Commit not found: {commit_hash}")


class BlobNotFoundError(TandemError):
    """Raised when an artifact payload lookup fails."""

    def __init__(self, content_hash: str) -> None:
        self.content_hash = content_hash
        super().__init__(f"Blob not found: {content_hash}")


class TrackNotFoundError(TandemError):
    """Raised when a track lookup fails."""

    def __init__(self, track: str) -> None:
        self.track = track
        super().__init__(f"Track not found: {track}")


class TrackExistsError(TandemError):
    """Raised when creating a track that already exists."""

    def __init__(self, track: str) -> None:
        self.track = track
        super().__init__(f"Track already exists: {track}")


class EnvironmentNotFoundError(TandemError):
    """Raised when an environment lookup fails."""

    def __init__(self, environment: str) -> None:
        self.environment = environment
        super().__init__(f"Environment not found: {environment}")


class EnvironmentExistsError(TandemError):
    """Raised when creating an environment that already exists."""

    def __init__(self, environment: str) -> None:
        self.environment = environment
        super().__init__(f"Environment already exists: {environment}")


class JobNotFoundError(TandemError):
    """Raised when a deployment job lookup fails."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Deployment job not found: {job_id}")


class ConflictSetNotFoundError(TandemError):
    """Raised when a conflict set lookup fails."""

    def __init__(self, conflict_set_id: str) -> None:
        self.conflict_set_id = conflict_set_id
        super().__init__(f"Conflict set not found: {conflict_set_id}")


# ---------------------------------------------------------------------------
# History integrity
# ---------------------------------------------------------------------------


class InvalidChangeSetError(TandemError):
    """Raised when a commit's change list is not a valid description of its
    touched artifacts (duplicates, add of an existing artifact, modify or
    delete of a missing one)."""


class NonLinearAdvanceError(TandemError):
    """Raised when advancing a track to a commit that does not descend from
    its current head.  Never auto-corrected."""

    def __init__(self, track: str, head: str | None, commit_hash: str) -> None:
        self.track = track
        self.head = head
        self.commit_hash = commit_hash
        super().__init__(
            f"Cannot advance track '{track}' to {commit_hash[:12]}: "
            f"not a descendant of head {(head or '')[:12]}"
        )


# ---------------------------------------------------------------------------
# Merge errors
# ---------------------------------------------------------------------------


class MergeConflictError(TandemError):
    """Base exception for merges that cannot complete because of conflicts."""

    def __init__(self, conflict_set_id: str, message: str) -> None:
        self.conflict_set_id = conflict_set_id
        super().__init__(message)


class UnresolvedConflictError(MergeConflictError):
    """Raised when resolving a conflict set without covering every entry."""

    def __init__(self, conflict_set_id: str, keys: list[str]) -> None:
        self.keys = keys
        super().__init__(
            conflict_set_id,
            f"Conflict set {conflict_set_id} has {len(keys)} unresolved "
            f"artifact(s): {', '.join(keys)}",
        )


class StaleConflictSetError(MergeConflictError):
    """Raised when the target head moved after the conflict was detected."""

    def __init__(self, conflict_set_id: str, target_track: str) -> None:
        self.target_track = target_track
        super().__init__(
            conflict_set_id,
            f"Conflict set {conflict_set_id} is stale: track '{target_track}' "
            f"has advanced since the merge was attempted. Retrofit again.",
        )


class ConflictSetClosedError(MergeConflictError):
    """Raised when resolving a conflict set that is no longer open."""

    def __init__(self, conflict_set_id: str, status: str) -> None:
        self.status = status
        super().__init__(
            conflict_set_id, f"Conflict set {conflict_set_id} is {status}"
        )


# ---------------------------------------------------------------------------
# Deployment errors
# ---------------------------------------------------------------------------


class ValidationFailedError(TandemError):
    """Raised when a deployment fails validation.  No mutation occurred."""

    def __init__(self, job_id: str, problems: list[str]) -> None:
        self.job_id = job_id
        self.problems = problems
        super().__init__(
            f"Deployment {job_id} failed validation: " + "; ".join(problems)
        )


class DeployFailedError(TandemError):
    """Raised by a target adapter when applying changes fails."""


class RollbackFailedError(TandemError):
    """Raised when restoring the pre-deploy snapshot fails.

    Fatal: the environment is quarantined until cleared by an operator.
    """

    def __init__(self, job_id: str, environment: str, reason: str) -> None:
        self.job_id = job_id
        self.environment = environment
        super().__init__(
            f"Rollback of deployment {job_id} on '{environment}' failed: {reason}"
        )


class EnvironmentQuarantinedError(TandemError):
    """Raised when automation is requested on a quarantined environment."""

    def __init__(self, environment: str, reason: str | None = None) -> None:
        self.environment = environment
        msg = f"Environment '{environment}' is quarantined"
        if reason:
            msg += f": {reason}"
        super().__init__(msg + ". Use clear_quarantine() after manual repair.")


class InvalidTransitionError(TandemError):
    """Raised when a deployment job is moved along an illegal edge."""

    def __init__(self, job_id: str, from_state: str, to_state: str) -> None:
        self.job_id = job_id
        super().__init__(
            f"Invalid transition for job {job_id}: {from_state} -> {to_state}"
        )


class JobNotCancellableError(TandemError):
    """Raised when cancelling a job that has started mutating its target."""

    def __init__(self, job_id: str, state: str) -> None:
        self.job_id = job_id
        self.state = state
        super().__init__(f"Job {job_id} cannot be cancelled in state {state}")


class DriftAbsorbError(TandemError):
    """Raised when live drift cannot be absorbed into the bound track."""


# ---------------------------------------------------------------------------
# Transient (caller-retriable)
# ---------------------------------------------------------------------------


class JobInProgressError(TandemError):
    """Raised when an environment already has an active deployment job."""

    def __init__(self, environment: str, job_id: str | None = None) -> None:
        self.environment = environment
        self.job_id = job_id
        msg = f"Environment '{environment}' has a deployment in progress"
        if job_id:
            msg += f" ({job_id})"
        super().__init__(msg)


class TrackLockedError(TandemError):
    """Raised when a track is locked by an in-flight retrofit."""

    def __init__(self, track: str) -> None:
        self.track = track
        super().__init__(f"Track '{track}' is locked by an in-flight merge")


class RequestIdConflictError(TandemError):
    """Raised when a client request id is reused for a different command."""

    def __init__(self, request_id: str, command: str, original: str) -> None:
        self.request_id = request_id
        super().__init__(
            f"Request id '{request_id}' was already used for '{original}', "
            f"cannot reuse it for '{command}'"
        )


@contextmanager
def operation_context(operation: str, **ids: object) -> Iterator[None]:
    """Attach operation ids to errors crossing a component boundary.

    TandemErrors get the ids merged into ``context`` (inner ids win);
    any other exception is wrapped in :class:`OperationError`.
    """
    ctx = {k: v for k, v in ids.items() if v is not None}
    try:
        yield
    except TandemError as exc:
        for key, value in ctx.items():
            exc.context.setdefault(key, value)
        exc.context.setdefault("operation", operation)
        raise
    except Exception as exc:
        wrapped = OperationError(operation, exc)
        wrapped.context.update(ctx)
        raise wrapped from exc
