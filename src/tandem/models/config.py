"""Configuration models for Tandem.

SyncConfig holds engine-wide settings: track-to-environment bindings,
expansion limits, drift and retrofit-lag thresholds, and the merge policy.
Configuration is owned by the caller; ``load_config`` reads a TOML file.

Example ``tandem.toml``::

    db_path = "tandem.db"
    excluded_types = ["Profile"]
    drift_staleness_seconds = 86400
    merge_policy = "partial"

    [[tracks]]
    name = "run"
    role = "run"
    environment = "prod"

    [[tracks]]
    name = "build"
    role = "build"
    environment = "uat"
"""

from __future__ import annotations

import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from tandem.models.merge import MergePolicy
from tandem.models.track import TrackRole


class TrackBinding(BaseModel):
    """Declares a track, its role, and the environment it deploys to."""

    name: str
    role: TrackRole
    environment: Optional[str] = None
    from_track: Optional[str] = None  # fork point when the track is created


class SyncConfig(BaseModel):
    """Engine-wide configuration."""

    db_path: str = ":memory:"
    db_url: Optional[str] = None
    tracks: list[TrackBinding] = []
    excluded_types: set[str] = set()
    drift_staleness_seconds: int = Field(default=7 * 24 * 3600, ge=0)
    retrofit_lag_seconds: int = Field(default=24 * 3600, ge=0)
    max_expansion_hops: int = Field(default=3, ge=0)
    merge_policy: MergePolicy = MergePolicy.PARTIAL
    auto_retrofit: bool = True
    worker_threads: int = Field(default=4, ge=1)
    state_cache_size: int = Field(default=32, ge=1)

    @field_validator("tracks")
    @classmethod
    def _unique_tracks(cls, v: list[TrackBinding]) -> list[TrackBinding]:
        names = [t.name for t in v]
        dupes = {n for n in names if names.count(n) > 1}
        if dupes:
            raise ValueError(f"duplicate track bindings: {sorted(dupes)}")
        return v

    @property
    def drift_staleness(self) -> timedelta:
        return timedelta(seconds=self.drift_staleness_seconds)

    @property
    def retrofit_lag(self) -> timedelta:
        return timedelta(seconds=self.retrofit_lag_seconds)

    def binding(self, track: str) -> TrackBinding | None:
        return next((t for t in self.tracks if t.name == track), None)

    @classmethod
    def from_dict(cls, d: dict | None) -> SyncConfig:
        """Create SyncConfig from a plain dict (e.g. parsed TOML)."""
        return cls.model_validate(d or {})


def load_config(path: str | Path) -> SyncConfig:
    """Load a SyncConfig from a TOML file.

    A ``[tandem]`` table is used when present, otherwise the top level.
    """
    with open(path, "rb") as fh:
        data = tomllib.load(fh)
    return SyncConfig.from_dict(data.get("tandem", data))
