"""Drift detection between an environment's live state and its record.

The record of an environment is the state materialized at its
``last_applied_commit``.  A scan classifies every differing artifact,
persists one open DriftRecord per (artifact, kind) and closes records that
are no longer observed.  Open records are reused across scans (same id,
same first-detected time), so repeated scans with no intervening mutation
return identical results.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from tandem.engine.structure import artifacts_equal, diff_states
from tandem.models.artifact import ArtifactKey
from tandem.models.drift import (
    DriftKind,
    DriftRecord,
    DriftResolution,
    DriftScanResult,
    DriftSeverity,
)
from tandem.storage.schema import DriftRecordRow
from tandem.storage.sqlite import as_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tandem.engine.structure import State
    from tandem.models.commit import ArtifactChange
    from tandem.storage.sqlite import Repositories

logger = logging.getLogger(__name__)


def classify(live: State, recorded: State) -> list[tuple[ArtifactKey, DriftKind]]:
    """Every drifted artifact with its kind, sorted by key."""
    found: list[tuple[ArtifactKey, DriftKind]] = []
    for key in sorted(set(live) | set(recorded)):
        in_live, in_record = live.get(key), recorded.get(key)
        if in_record is None:
            found.append((key, DriftKind.ADDED_LIVE_ONLY))
        elif in_live is None:
            found.append((key, DriftKind.DELETED_LIVE_ONLY))
        elif not artifacts_equal(in_live, in_record):
            found.append((key, DriftKind.MODIFIED))
    return found


def severity_for(detected_at: datetime, now: datetime, staleness: timedelta) -> DriftSeverity:
    if now - detected_at > staleness:
        return DriftSeverity.CRITICAL
    return DriftSeverity.WARNING


def row_to_record(row: DriftRecordRow, now: datetime, staleness: timedelta) -> DriftRecord:
    detected_at = as_utc(row.detected_at)
    return DriftRecord(
        record_id=row.record_id,
        env_id=row.env_id,
        key=ArtifactKey(type=row.artifact_type, name=row.artifact_name),
        kind=row.kind,
        detected_at=detected_at,
        severity=(
            severity_for(detected_at, now, staleness)
            if row.resolution is None
            else DriftSeverity.WARNING
        ),
        commit_hash=row.commit_hash,
        resolved_at=as_utc(row.resolved_at),
        resolution=row.resolution,
    )


def scan_environment(
    repos: Repositories,
    env_id: str,
    live: State,
    recorded: State,
    recorded_commit: str | None,
    *,
    staleness: timedelta,
    now: datetime | None = None,
) -> DriftScanResult:
    """Compare ``live`` with ``recorded`` and reconcile stored drift records.

    Live state and tracks are never modified.
    """
    now = now or datetime.now(timezone.utc)
    open_rows = {
        (ArtifactKey(type=r.artifact_type, name=r.artifact_name), r.kind): r
        for r in repos.drift.get_open(env_id)
    }

    rows: list[DriftRecordRow] = []
    for key, kind in classify(live, recorded):
        row = open_rows.pop((key, kind), None)
        if row is None:
            row = DriftRecordRow(
                record_id=uuid.uuid4().hex,
                env_id=env_id,
                artifact_type=key.type,
                artifact_name=key.name,
                kind=kind,
                commit_hash=recorded_commit,
                detected_at=now,
                last_seen_at=now,
            )
            repos.drift.save(row)
            logger.warning("Drift detected on %s: %s %s", env_id, kind, key)
        else:
            row.last_seen_at = now
        rows.append(row)

    for row in open_rows.values():
        row.resolution = DriftResolution.RECONCILED
        row.resolved_at = now
        logger.info(
            "Drift reconciled on %s: %s %s:%s",
            env_id,
            row.kind,
            row.artifact_type,
            row.artifact_name,
        )
    repos.session.flush()

    records = [row_to_record(r, now, staleness) for r in rows]
    logger.info("Drift scan of %s: %d open record(s)", env_id, len(records))
    return DriftScanResult(
        scan_id=uuid.uuid4().hex,
        env_id=env_id,
        commit_hash=recorded_commit,
        scanned_at=now,
        records=records,
    )


def close_drift(
    repos: Repositories,
    env_id: str,
    keys: Iterable[ArtifactKey],
    resolution: DriftResolution,
    now: datetime | None = None,
) -> int:
    """Close the open records of ``keys`` with ``resolution``.  Returns the count."""
    now = now or datetime.now(timezone.utc)
    wanted = set(keys)
    closed = 0
    for row in repos.drift.get_open(env_id):
        if ArtifactKey(type=row.artifact_type, name=row.artifact_name) in wanted:
            row.resolution = resolution
            row.resolved_at = now
            closed += 1
    repos.session.flush()
    if closed:
        logger.info("Closed %d drift record(s) on %s as %s", closed, env_id, resolution)
    return closed


def absorb_changes(
    live: State, recorded: State, keys: Iterable[ArtifactKey] | None = None
) -> list[ArtifactChange]:
    """Changes that make ``recorded`` match ``live`` (for ``keys`` only)."""
    if keys is None:
        return diff_states(recorded, live)
    wanted = set(keys)
    return diff_states(
        {k: a for k, a in recorded.items() if k in wanted},
        {k: a for k, a in live.items() if k in wanted},
    )
