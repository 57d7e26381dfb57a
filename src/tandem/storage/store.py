"""Unit-of-work access to Tandem storage.

All components share one engine.  Each operation runs in its own short
session: ``unit_of_work()`` yields the repositories bound to that session,
commits when the block exits cleanly and rolls back on any exception.
Units of work are serialized by a re-entrant store lock, which keeps
SQLite writers from interleaving while deployment workers run in threads.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

from tandem.storage.engine import create_session_factory, create_tandem_engine, init_db
from tandem.storage.sqlite import Repositories

if TYPE_CHECKING:
    from collections.abc import Iterator

    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class Store:
    """Engine, session factory and store lock."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        self._lock = threading.RLock()
        self._local = threading.local()

    @classmethod
    def open(cls, db_path: str = ":memory:", *, url: str | None = None) -> Store:
        engine = create_tandem_engine(db_path, url=url)
        init_db(engine)
        return cls(engine)

    @contextmanager
    def unit_of_work(self) -> Iterator[Repositories]:
        """Run a block in one transaction.

        Nested calls on the same thread join the outer unit of work, so an
        operation composed of smaller operations commits or rolls back as
        a whole.
        """
        with self._lock:
            current: Repositories | None = getattr(self._local, "repos", None)
            if current is not None:
                yield current
                return
            session = self._session_factory()
            repos = Repositories.for_session(session)
            self._local.repos = repos
            try:
                yield repos
                session.commit()
            except BaseException:
                session.rollback()
                raise
            finally:
                self._local.repos = None
                session.close()
        for callback in repos.after_commit:
            callback()

    def close(self) -> None:
        self.engine.dispose()
        logger.debug("Store closed")
