"""Tests for client request ids: retried commands return the first result."""

from __future__ import annotations

import threading

import pytest

from tandem import (
    ArtifactChange,
    InvalidChangeSetError,
    JobState,
    RequestIdConflictError,
    Tandem,
)
from tandem.targets import DatabaseTarget

from tests.conftest import flow, seed


class TestRequestIds:
    def test_commit_is_applied_once(self, t: Tandem):
        changes = [ArtifactChange.add(flow("A"))]
        first = t.submit_commit("run", changes, request_id="c-1")
        again = t.submit_commit("run", changes, request_id="c-1")
        assert again.commit_hash == first.commit_hash
        assert len(t.log("run")) == 1

    def test_retrofit_replays_stored_result(self, t: Tandem):
        seed(t, "run", flow("A"))
        first = t.request_retrofit("run", "build", request_id="r-1")
        again = t.request_retrofit("run", "build", request_id="r-1")
        assert first.status == again.status == "merged"
        assert again.merge_commit == first.merge_commit
        assert t.request_retrofit("run", "build").status == "up_to_date"

    def test_deploy_replay_reports_current_job_state(self, t: Tandem):
        seed(t, "run", flow("A"))
        job = t.request_deployment("run", "prod", background=True, request_id="d-1")
        done = t.wait_for_job(job.job_id, timeout=5)
        replay = t.request_deployment("run", "prod", request_id="d-1")
        assert replay.job_id == job.job_id
        assert replay.state == done.state == JobState.DEPLOYED

    def test_reuse_for_other_command(self, t: Tandem):
        t.submit_commit("run", [ArtifactChange.add(flow("A"))], request_id="shared")
        with pytest.raises(RequestIdConflictError):
            t.request_retrofit("run", "build", request_id="shared")
        assert t.get_track("build").head is None

    def test_failed_command_is_not_recorded(self, t: Tandem):
        with pytest.raises(InvalidChangeSetError):
            t.submit_commit("run", [ArtifactChange.modify(flow("A"))], request_id="c-2")
        info = t.submit_commit("run", [ArtifactChange.add(flow("A"))], request_id="c-2")
        assert t.get_track("run").head == info.commit_hash

    def test_resolve_replay(self, t: Tandem):
        seed(t, "run", flow("A"))
        t.request_retrofit("run", "build")
        t.submit_commit("run", [ArtifactChange.modify(flow("A", label="run"))])
        t.submit_commit("build", [ArtifactChange.modify(flow("A", label="build"))])
        cs = t.request_retrofit("run", "build").conflict_set
        first = t.resolve_conflict(cs.conflict_set_id, {"Flow:A": "theirs"}, request_id="x-1")
        again = t.resolve_conflict(cs.conflict_set_id, {"Flow:A": "theirs"}, request_id="x-1")
        assert again.merge_commit == first.merge_commit


class SlowReadTarget(DatabaseTarget):
    """Counts reads and holds each one until released."""

    def __init__(self, store) -> None:
        super().__init__(store)
        self.reads = 0
        self.entered = threading.Event()
        self.release = threading.Event()

    def read(self, env_id):
        self.reads += 1
        self.entered.set()
        assert self.release.wait(5)
        return super().read(env_id)


class TestConcurrentRetries:
    def test_concurrent_scans_with_one_request_id_run_once(self, t: Tandem):
        seed(t, "run", flow("A"))
        t.request_deployment("run", "prod").raise_for_state()
        t.edit_live("prod", flow("A", label="hand edit"))
        target = SlowReadTarget(t._store)
        t.register_target("prod", target)

        results, errors = [], []

        def scan():
            try:
                results.append(t.request_drift_scan("prod", request_id="scan-1"))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=scan) for _ in range(2)]
        for thread in threads:
            thread.start()
        assert target.entered.wait(5)
        target.release.set()
        for thread in threads:
            thread.join(5)

        assert errors == []
        assert len(results) == 2
        assert results[0].scan_id == results[1].scan_id
        assert target.reads == 1
        assert len(t.events("drift_detected")) == 1

    def test_insert_lost_to_another_process_replays_stored_result(self, t: Tandem, monkeypatch):
        first = t.submit_commit("run", [ArtifactChange.add(flow("A"))], request_id="c-9")
        lookup = t._stored_result
        calls = []

        def miss_first_lookup(request_id, command):
            calls.append(request_id)
            return None if len(calls) == 1 else lookup(request_id, command)

        monkeypatch.setattr(t, "_stored_result", miss_first_lookup)
        again = t.submit_commit("run", [ArtifactChange.add(flow("B"))], request_id="c-9")
        assert again.commit_hash == first.commit_hash
        assert len(calls) == 2
