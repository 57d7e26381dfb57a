"""Deterministic hashing utilities for Tandem.

Provides canonical JSON serialization and SHA-256 hashing for artifact
payloads and commits.  All hashing is deterministic: same input always
produces same output, regardless of dict key ordering.

IMPORTANT: Pydantic models must be converted to plain data (e.g. via
``Artifact.canonical()`` or ``model_dump(mode="json")``) BEFORE passing to
these functions.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(data: Any) -> bytes:
    """Serialize data to canonical JSON bytes.

    Uses sorted keys, compact separators, and UTF-8 encoding
    to ensure deterministic output.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def content_hash(payload: Any) -> str:
    """Compute SHA-256 hash of a canonical payload."""
    return hashlib.sha256(canonical_json(payload)).hexdigest()


def commit_hash(
    track: str,
    parent_hashes: list[str],
    changes: list[dict],
    timestamp_iso: str,
    message: str | None = None,
) -> str:
    """Compute SHA-256 hash of structured commit data.

    Args:
        track: Track the commit is authored on.
        parent_hashes: Ordered parent ids (first parent first).
        changes: Change descriptors ``{"kind", "key", "content_hash"}``.
        timestamp_iso: ISO 8601 timestamp string.
        message: Optional commit message; only included when not None.

    Returns:
        Hex digest of SHA-256 hash.
    """
    data: dict[str, Any] = {
        "track": track,
        "parents": list(parent_hashes),
        "changes": changes,
        "timestamp_iso": timestamp_iso,
    }
    if message is not None:
        data["message"] = message
    return hashlib.sha256(canonical_json(data)).hexdigest()
