"""Tandem: keep two long-lived configuration tracks and their live
environments reconciled.

A RUN track mirrors production and a BUILD track mirrors the next release.
Tandem retrofits RUN work into BUILD with ancestry preserved, detects drift
between what was deployed and what is live, and promotes commits into
environments through validated, rollback-safe deployment jobs.
"""

from tandem._version import __version__

# Core entry point
from tandem.tandem import Tandem

# Artifact model
from tandem.models.artifact import Artifact, ArtifactKey, Container, Leaf, Reference, ref

# Commit and track types
from tandem.models.commit import ArtifactChange, ChangeKind, CommitInfo, CommitKind
from tandem.models.track import EnvironmentInfo, TrackInfo, TrackRole

# Configuration
from tandem.models.config import SyncConfig, TrackBinding, load_config

# Merge models
from tandem.models.merge import (
    ConflictEntry,
    ConflictSet,
    ConflictSetStatus,
    MergePolicy,
    MergeResult,
    Resolution,
)

# Drift and deployment models
from tandem.models.drift import DriftKind, DriftRecord, DriftResolution, DriftScanResult, DriftSeverity
from tandem.models.deployment import DeploymentJob, JobState, JobTransition

# Events
from tandem.models.events import (
    DeploymentStateChanged,
    DriftDetected,
    Event,
    MergeConflictDetected,
    RetrofitLagExceeded,
)

# Protocols and adapters
from tandem.protocols import NotificationSink, TargetAdapter
from tandem.targets import DatabaseTarget

# Exceptions
from tandem.exceptions import (
    CommitNotFoundError,
    ConflictSetClosedError,
    ConflictSetNotFoundError,
    DeployFailedError,
    DriftAbsorbError,
    EnvironmentExistsError,
    EnvironmentNotFoundError,
    EnvironmentQuarantinedError,
    InvalidChangeSetError,
    InvalidTransitionError,
    JobInProgressError,
    JobNotCancellableError,
    JobNotFoundError,
    MergeConflictError,
    NonLinearAdvanceError,
    OperationError,
    RequestIdConflictError,
    RollbackFailedError,
    StaleConflictSetError,
    TandemError,
    TrackExistsError,
    TrackLockedError,
    TrackNotFoundError,
    UnresolvedConflictError,
    ValidationFailedError,
)

__all__ = [
    "__version__",
    "Tandem",
    "Artifact",
    "ArtifactKey",
    "Container",
    "Leaf",
    "Reference",
    "ref",
    "ArtifactChange",
    "ChangeKind",
    "CommitInfo",
    "CommitKind",
    "EnvironmentInfo",
    "TrackInfo",
    "TrackRole",
    "SyncConfig",
    "TrackBinding",
    "load_config",
    "ConflictEntry",
    "ConflictSet",
    "ConflictSetStatus",
    "MergePolicy",
    "MergeResult",
    "Resolution",
    "DriftKind",
    "DriftRecord",
    "DriftResolution",
    "DriftScanResult",
    "DriftSeverity",
    "DeploymentJob",
    "JobState",
    "JobTransition",
    "DeploymentStateChanged",
    "DriftDetected",
    "Event",
    "MergeConflictDetected",
    "RetrofitLagExceeded",
    "NotificationSink",
    "TargetAdapter",
    "DatabaseTarget",
    "CommitNotFoundError",
    "ConflictSetClosedError",
    "ConflictSetNotFoundError",
    "DeployFailedError",
    "DriftAbsorbError",
    "EnvironmentExistsError",
    "EnvironmentNotFoundError",
    "EnvironmentQuarantinedError",
    "InvalidChangeSetError",
    "InvalidTransitionError",
    "JobInProgressError",
    "JobNotCancellableError",
    "JobNotFoundError",
    "MergeConflictError",
    "NonLinearAdvanceError",
    "OperationError",
    "RequestIdConflictError",
    "RollbackFailedError",
    "StaleConflictSetError",
    "TandemError",
    "TrackExistsError",
    "TrackLockedError",
    "TrackNotFoundError",
    "UnresolvedConflictError",
    "ValidationFailedError",
]
