"""Commit domain model for Tandem.

CommitInfo is the SDK-facing model returned when querying commits.
ArtifactChange is one entry of a commit's ordered change list.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, model_validator

from tandem.models.artifact import Artifact, ArtifactKey


class ChangeKind(str, enum.Enum):
    """Kinds of artifact change a commit can record."""

    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"

    def __repr__(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


class CommitKind(str, enum.Enum):
    """NORMAL commits carry authored changes, MERGE commits join two tracks,
    PARTIAL commits record the clean part of a conflicted merge and are
    never advanced onto a track."""

    NORMAL = "normal"
    MERGE = "merge"
    PARTIAL = "partial"

    def __str__(self) -> str:
        return self.value


class ArtifactChange(BaseModel):
    """A single add/modify/delete of one artifact."""

    kind: ChangeKind
    key: ArtifactKey
    artifact: Optional[Artifact] = None

    @model_validator(mode="after")
    def _check_payload(self) -> ArtifactChange:
        if self.kind == ChangeKind.DELETE:
            if self.artifact is not None:
                raise ValueError("delete changes carry no artifact")
        else:
            if self.artifact is None:
                raise ValueError(f"{self.kind.value} change requires an artifact")
            if self.artifact.key != self.key:
                raise ValueError(
                    f"change key {self.key} does not match artifact {self.artifact.key}"
                )
        return self

    @classmethod
    def add(cls, artifact: Artifact) -> ArtifactChange:
        return cls(kind=ChangeKind.ADD, key=artifact.key, artifact=artifact)

    @classmethod
    def modify(cls, artifact: Artifact) -> ArtifactChange:
        return cls(kind=ChangeKind.MODIFY, key=artifact.key, artifact=artifact)

    @classmethod
    def delete(cls, key: ArtifactKey | str) -> ArtifactChange:
        if isinstance(key, str):
            key = ArtifactKey.parse(key)
        return cls(kind=ChangeKind.DELETE, key=key)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.key}"


class CommitInfo(BaseModel):
    """SDK-facing commit information model.

    Not an ORM model -- used for data transfer only.
    """

    commit_hash: str
    track: str
    parents: list[str] = []
    kind: CommitKind = CommitKind.NORMAL
    changes: list[ArtifactChange] = []
    message: Optional[str] = None
    author: Optional[str] = None
    metadata: Optional[dict] = None
    created_at: datetime

    @property
    def parent_hash(self) -> Optional[str]:
        """First parent, or None for a root commit."""
        return self.parents[0] if self.parents else None

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    def touched(self) -> set[ArtifactKey]:
        return {c.key for c in self.changes}

    def __str__(self) -> str:
        short_hash = self.commit_hash[:8]
        msg = self.message or ""
        if len(msg) > 60:
            msg = msg[:57] + "..."
        return f"{short_hash} {msg}"

    def __repr__(self) -> str:
        return (
            f"CommitInfo({self.commit_hash[:8]} {self.kind.value} "
            f"track={self.track} changes={len(self.changes)})"
        )
