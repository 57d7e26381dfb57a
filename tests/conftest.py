"""Shared test fixtures for Tandem.

Provides in-memory SQLite engine, session, repository fixtures, and helpers
that build tracks, environments and artifacts through the facade.
"""

from __future__ import annotations

import pytest
from sqlalchemy.orm import Session, sessionmaker

from tandem import Artifact, ArtifactChange, SyncConfig, Tandem, TrackRole
from tandem.operations.graph import CommitGraph, StateCache
from tandem.storage.engine import create_tandem_engine, init_db
from tandem.storage.sqlite import Repositories


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_tandem_engine(":memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    """Session with automatic rollback after each test."""
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sess = SessionLocal()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def repos(session: Session) -> Repositories:
    return Repositories.for_session(session)


@pytest.fixture
def graph(repos: Repositories) -> CommitGraph:
    return CommitGraph(repos, StateCache())


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(auto_retrofit=False)


@pytest.fixture
def t(config: SyncConfig):
    """In-memory Tandem with ``run`` -> prod and ``build`` -> uat."""
    tandem = Tandem.open(config=config)
    tandem.create_environment("prod")
    tandem.create_environment("uat")
    tandem.create_track("run", TrackRole.RUN, environment="prod")
    tandem.create_track("build", TrackRole.BUILD, environment="uat")
    yield tandem
    tandem.close()


# ------------------------------------------------------------------
# Shared test helpers
# ------------------------------------------------------------------


def flow(name: str, *, label: str = "v1", steps: dict | None = None, **extra) -> Artifact:
    """A Flow artifact with a label and an optional ordered step list."""
    from tandem import Container, Leaf

    children: dict = {"label": label}
    if steps is not None:
        children["steps"] = Container(
            ordered=True, children={k: Leaf(value=v) for k, v in steps.items()}
        )
    children.update(extra)
    return Artifact.build(f"Flow:{name}", children)


def seed(t: Tandem, track: str, *artifacts: Artifact, message: str | None = None) -> str:
    """Commit ``artifacts`` as adds onto ``track``; returns the commit hash."""
    info = t.submit_commit(track, [ArtifactChange.add(a) for a in artifacts], message=message)
    return info.commit_hash


def modify(t: Tandem, track: str, *artifacts: Artifact, message: str | None = None) -> str:
    info = t.submit_commit(track, [ArtifactChange.modify(a) for a in artifacts], message=message)
    return info.commit_hash


class RecordingSink:
    """NotificationSink that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list = []

    def notify(self, event) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]
