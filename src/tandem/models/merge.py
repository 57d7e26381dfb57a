"""Retrofit (merge) domain models for Tandem.

Defines the per-artifact conflict description, the ConflictSet queued for
external resolution, resolutions supplied by the caller, and the
MergeResult returned by every retrofit.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, model_validator

from tandem.models.artifact import Artifact, ArtifactKey


class MergePolicy(str, enum.Enum):
    """PARTIAL merges every clean artifact into a partial commit and queues
    conflicts; ATOMIC blocks the whole merge pending resolution."""

    PARTIAL = "partial"
    ATOMIC = "atomic"

    def __str__(self) -> str:
        return self.value


class ConflictSetStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    SUPERSEDED = "superseded"

    def __str__(self) -> str:
        return self.value


class SideChange(BaseModel):
    """One side's change to an artifact relative to the merge base."""

    change: Literal["added", "modified", "deleted", "unchanged"]
    artifact: Optional[Artifact] = None

    def describe(self) -> str:
        return self.change


class ConflictEntry(BaseModel):
    """Overlapping edits to one artifact.

    ``regions`` lists every conflicting region path joined with ``/``;
    the empty string means the artifact as a whole.
    """

    key: ArtifactKey
    regions: list[str] = []
    base: Optional[Artifact] = None
    ours: SideChange  # target track
    theirs: SideChange  # source track

    def __str__(self) -> str:
        regions = ", ".join(r or "<artifact>" for r in self.regions)
        return (
            f"{self.key}: ours={self.ours.change} theirs={self.theirs.change} "
            f"[{regions}]"
        )


class ConflictSet(BaseModel):
    """Artifacts with unresolved overlapping edits from one retrofit."""

    conflict_set_id: str
    source_track: str
    target_track: str
    source_head: str
    target_head: str
    base_hash: Optional[str] = None
    policy: MergePolicy = MergePolicy.PARTIAL
    status: ConflictSetStatus = ConflictSetStatus.OPEN
    partial_commit: Optional[str] = None
    merge_commit: Optional[str] = None
    entries: list[ConflictEntry] = []
    created_at: datetime
    resolved_at: Optional[datetime] = None

    def keys(self) -> list[ArtifactKey]:
        return [e.key for e in self.entries]

    def entry(self, key: ArtifactKey | str) -> ConflictEntry | None:
        k = str(key)
        return next((e for e in self.entries if str(e.key) == k), None)

    def __repr__(self) -> str:
        return (
            f"ConflictSet({self.conflict_set_id[:8]} "
            f"{self.source_track}->{self.target_track} "
            f"entries={len(self.entries)} {self.status.value})"
        )


class Resolution(BaseModel):
    """How to settle one conflict entry.

    ``ours`` keeps the target version, ``theirs`` takes the source version,
    ``custom`` uses ``artifact`` (``None`` deletes the artifact).
    """

    choice: Literal["ours", "theirs", "custom"]
    artifact: Optional[Artifact] = None

    @model_validator(mode="after")
    def _check(self) -> Resolution:
        if self.choice != "custom" and self.artifact is not None:
            raise ValueError("only custom resolutions carry an artifact")
        return self

    @classmethod
    def ours(cls) -> Resolution:
        return cls(choice="ours")

    @classmethod
    def theirs(cls) -> Resolution:
        return cls(choice="theirs")

    @classmethod
    def custom(cls, artifact: Artifact | None) -> Resolution:
        return cls(choice="custom", artifact=artifact)


class MergeResult(BaseModel):
    """Outcome of a retrofit or of a conflict resolution.

    ``status``:
    - ``up_to_date``: source is already an ancestor of target (no-op).
    - ``merged``: a two-parent merge commit was advanced onto the target.
    - ``conflict``: a ConflictSet is open; the target head did not move.
    """

    retrofit_id: str
    status: Literal["up_to_date", "merged", "conflict"]
    source_track: str
    target_track: str
    source_head: Optional[str] = None
    target_head: Optional[str] = None
    base_hash: Optional[str] = None
    merge_commit: Optional[str] = None
    partial_commit: Optional[str] = None
    conflict_set: Optional[ConflictSet] = None
    merged_keys: list[ArtifactKey] = []
    created_at: datetime

    @property
    def committed(self) -> bool:
        return self.status == "merged"

    def __str__(self) -> str:
        n = len(self.conflict_set.entries) if self.conflict_set else 0
        return (
            f"{self.status} retrofit {self.source_track}->{self.target_track} "
            f"({n} conflicts)"
        )
