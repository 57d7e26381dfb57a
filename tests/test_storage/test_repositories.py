"""Tests for repository implementations and the unit of work.

Covers:
- SqliteBlobRepository deduplication and ordered-container round trip
- SqliteCommitRepository prefix lookup
- SqliteLiveStateRepository put/remove/replace_all
- SqliteSnapshotRepository entries
- SqliteJobRepository active-job lookup
- Store.unit_of_work commit, rollback, nesting and after-commit callbacks
"""

from datetime import datetime, timezone

import pytest

from tandem import Artifact, ArtifactChange, ArtifactKey, Container, Leaf, TrackRole
from tandem.exceptions import BlobNotFoundError
from tandem.models.deployment import JobState
from tandem.storage.schema import BlobRow, DeploymentJobRow, EnvironmentRow
from tandem.storage.store import Store


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _env(repos, env_id: str = "prod") -> None:
    repos.environments.save(EnvironmentRow(env_id=env_id, quarantined=False, created_at=_now()))


def _job(job_id: str, state: JobState, env_id: str = "prod") -> DeploymentJobRow:
    now = _now()
    return DeploymentJobRow(
        job_id=job_id,
        env_id=env_id,
        track="run",
        commit_hash="c" * 64,
        state=state,
        overwrite_drift=False,
        cancel_requested=False,
        created_at=now,
        updated_at=now,
    )


A = Artifact.build("Flow:A", {"label": "v1"})
B = Artifact.build("Flow:B", {"label": "v1"})


# ---------------------------------------------------------------------------
# Blobs
# ---------------------------------------------------------------------------


class TestBlobRepository:
    def test_put_deduplicates(self, repos, session):
        first = repos.blobs.put(A)
        second = repos.blobs.put(Artifact.build("Flow:A", {"label": "v1"}))
        assert first == second
        assert session.query(BlobRow).count() == 1

    def test_reordered_unordered_body_shares_blob(self, repos, session):
        x = Artifact.build("Layout:L", {"a": 1, "b": 2})
        y = Artifact.build("Layout:L", {"b": 2, "a": 1})
        assert repos.blobs.put(x) == repos.blobs.put(y)
        assert session.query(BlobRow).count() == 1

    def test_ordered_children_survive_round_trip(self, repos, session):
        steps = Container(ordered=True, children={n: Leaf(value=n) for n in ("c", "a", "b")})
        c_hash = repos.blobs.put(Artifact.build("Flow:O", {"steps": steps}))
        session.commit()
        fresh = type(repos).for_session(session)
        loaded = fresh.blobs.get(c_hash)
        assert list(loaded.body.children["steps"].children) == ["c", "a", "b"]

    def test_missing_blob(self, repos):
        with pytest.raises(BlobNotFoundError):
            repos.blobs.get("0" * 64)


# ---------------------------------------------------------------------------
# Commits
# ---------------------------------------------------------------------------


class TestCommitRepository:
    def test_prefix_lookup(self, repos, graph):
        graph.create_track("run", TrackRole.RUN)
        info = graph.create_commit("run", [ArtifactChange.add(A)])
        row = repos.commits.get_by_prefix(info.commit_hash[:10])
        assert row.commit_hash == info.commit_hash

    def test_unknown_prefix(self, repos):
        assert repos.commits.get_by_prefix("abcdef") is None

    def test_short_prefix_rejected(self, repos):
        with pytest.raises(ValueError, match="at least 4"):
            repos.commits.get_by_prefix("ab")

    def test_single_parent_commits_store_no_parent_rows(self, repos, graph):
        graph.create_track("run", TrackRole.RUN)
        info = graph.create_commit("run", [ArtifactChange.add(A)])
        assert repos.parents.get_parents(info.commit_hash) == []
        assert repos.commits.get(info.commit_hash).parent_hash is None


# ---------------------------------------------------------------------------
# Live state and snapshots
# ---------------------------------------------------------------------------


class TestLiveStateRepository:
    def test_put_remove(self, repos):
        _env(repos)
        a, b = repos.blobs.put(A), repos.blobs.put(B)
        repos.live.put("prod", A.key, a)
        repos.live.put("prod", B.key, b)
        assert repos.live.read("prod") == {A.key: a, B.key: b}
        assert repos.live.remove("prod", A.key)
        assert not repos.live.remove("prod", A.key)
        assert repos.live.read("prod") == {B.key: b}

    def test_put_overwrites(self, repos):
        _env(repos)
        v2 = Artifact.build("Flow:A", {"label": "v2"})
        repos.live.put("prod", A.key, repos.blobs.put(A))
        repos.live.put("prod", A.key, repos.blobs.put(v2))
        assert repos.live.read("prod") == {A.key: v2.content_hash()}

    def test_replace_all(self, repos):
        _env(repos)
        _env(repos, "uat")
        repos.live.put("prod", A.key, repos.blobs.put(A))
        repos.live.put("uat", A.key, repos.blobs.put(A))
        repos.live.replace_all("prod", {B.key: repos.blobs.put(B)})
        assert set(repos.live.read("prod")) == {B.key}
        assert set(repos.live.read("uat")) == {A.key}


class TestSnapshotRepository:
    def test_entries(self, repos):
        _env(repos)
        entries = {A.key: repos.blobs.put(A), B.key: repos.blobs.put(B)}
        repos.snapshots.create("snap-1", "prod", None, entries, _now())
        assert repos.snapshots.get_entries("snap-1") == entries

    def test_empty_and_missing(self, repos):
        _env(repos)
        repos.snapshots.create("snap-empty", "prod", None, {}, _now())
        assert repos.snapshots.get_entries("snap-empty") == {}
        assert repos.snapshots.get_entries("nope") is None


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class TestJobRepository:
    def test_active_ignores_terminal_jobs(self, repos):
        _env(repos)
        repos.jobs.save(_job("done", JobState.DEPLOYED))
        repos.jobs.save(_job("failed", JobState.ROLLBACK_FAILED))
        assert repos.jobs.get_active("prod") is None
        repos.jobs.save(_job("live", JobState.VALIDATING))
        assert repos.jobs.get_active("prod").job_id == "live"
        assert repos.jobs.get_active("uat") is None

    def test_list_filters(self, repos):
        _env(repos)
        _env(repos, "uat")
        repos.jobs.save(_job("a", JobState.DEPLOYED))
        repos.jobs.save(_job("b", JobState.PENDING, env_id="uat"))
        assert [j.job_id for j in repos.jobs.list("uat")] == ["b"]
        assert [j.job_id for j in repos.jobs.list(states={JobState.DEPLOYED})] == ["a"]
        assert len(repos.jobs.list()) == 2


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = Store.open()
    yield s
    s.close()


class TestUnitOfWork:
    def test_commit_on_clean_exit(self, store):
        with store.unit_of_work() as repos:
            c_hash = repos.blobs.put(A)
        with store.unit_of_work() as repos:
            assert repos.blobs.get(c_hash) == A

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.unit_of_work() as repos:
                c_hash = repos.blobs.put(A)
                raise RuntimeError("boom")
        with store.unit_of_work() as repos:
            with pytest.raises(BlobNotFoundError):
                repos.blobs.get(c_hash)

    def test_nested_units_share_one_transaction(self, store):
        with pytest.raises(RuntimeError):
            with store.unit_of_work() as outer:
                with store.unit_of_work() as inner:
                    assert inner is outer
                    c_hash = inner.blobs.put(B)
                raise RuntimeError("outer fails")
        with store.unit_of_work() as repos:
            with pytest.raises(BlobNotFoundError):
                repos.blobs.get(c_hash)

    def test_callbacks_run_after_commit_only(self, store):
        calls: list[str] = []
        with store.unit_of_work() as repos:
            repos.on_commit(lambda: calls.append("done"))
            assert calls == []
        assert calls == ["done"]

        with pytest.raises(RuntimeError):
            with store.unit_of_work() as repos:
                repos.on_commit(lambda: calls.append("never"))
                raise RuntimeError("boom")
        assert calls == ["done"]

    def test_keys_parse_back(self, store):
        with store.unit_of_work() as repos:
            repos.environments.save(
                EnvironmentRow(env_id="prod", quarantined=False, created_at=_now())
            )
            repos.live.put("prod", ArtifactKey.parse("Flow:A"), repos.blobs.put(A))
        with store.unit_of_work() as repos:
            assert list(repos.live.read("prod")) == [ArtifactKey(type="Flow", name="A")]
