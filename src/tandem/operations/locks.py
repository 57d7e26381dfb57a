"""Named locks for environments, tracks and client requests.

Environment and track locks never wait: a held lock makes the caller fail
fast with a retriable error (``JobInProgressError`` for ``env:<id>``,
``TrackLockedError`` for ``track:<name>``).  Request locks block, so a
retried request waits for the first attempt and then replays its result.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

from tandem.exceptions import JobInProgressError, TrackLockedError

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


def env_lock(env_id: str) -> str:
    return f"env:{env_id}"


def track_lock(track: str) -> str:
    return f"track:{track}"


def request_lock(request_id: str) -> str:
    return f"request:{request_id}"


class LockRegistry:
    """Process-wide registry of named locks with owner tokens.

    A lock is released by name, not by thread: a deployment lock taken by
    the requesting thread is released by the worker that finishes the job.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._held: dict[str, str] = {}
        # name -> (lock, number of threads holding or waiting on it)
        self._waiting: dict[str, tuple[threading.Lock, int]] = {}

    def try_acquire(self, name: str, owner: str) -> bool:
        with self._mutex:
            if name in self._held:
                return False
            self._held[name] = owner
        logger.debug("Lock %s acquired by %s", name, owner)
        return True

    def release(self, name: str, owner: str | None = None) -> None:
        with self._mutex:
            holder = self._held.get(name)
            if holder is None:
                return
            if owner is not None and holder != owner:
                raise RuntimeError(f"Lock {name} is held by {holder}, not {owner}")
            del self._held[name]
        logger.debug("Lock %s released", name)

    def holder(self, name: str) -> str | None:
        with self._mutex:
            return self._held.get(name)

    def is_locked(self, name: str) -> bool:
        return self.holder(name) is not None

    def acquire_env(self, env_id: str, owner: str) -> None:
        if not self.try_acquire(env_lock(env_id), owner):
            raise JobInProgressError(env_id, self.holder(env_lock(env_id)))

    def release_env(self, env_id: str, owner: str | None = None) -> None:
        self.release(env_lock(env_id), owner)

    @contextmanager
    def hold_track(self, track: str, owner: str) -> Iterator[None]:
        """Hold a track lock for the duration of a block."""
        name = track_lock(track)
        if not self.try_acquire(name, owner):
            raise TrackLockedError(track)
        try:
            yield
        finally:
            self.release(name, owner)

    @contextmanager
    def hold_request(self, request_id: str) -> Iterator[None]:
        """Serialize every attempt of one client request, waiting if needed."""
        name = request_lock(request_id)
        with self._mutex:
            lock, users = self._waiting.get(name, (threading.Lock(), 0))
            self._waiting[name] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._mutex:
                lock, users = self._waiting[name]
                if users == 1:
                    del self._waiting[name]
                else:
                    self._waiting[name] = (lock, users - 1)
