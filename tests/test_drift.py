"""Tests for drift scans and drift absorption."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tandem import (
    ArtifactKey,
    DriftAbsorbError,
    DriftKind,
    DriftResolution,
    DriftSeverity,
    EnvironmentNotFoundError,
    Tandem,
    TrackLockedError,
    TrackRole,
)

from tests.conftest import RecordingSink, flow, modify, seed

A = ArtifactKey.parse("Flow:A")
B = ArtifactKey.parse("Flow:B")
C = ArtifactKey.parse("Flow:C")


@pytest.fixture
def live(t: Tandem) -> Tandem:
    """prod runs Flow:A and Flow:B from the run track."""
    seed(t, "run", flow("A"), flow("B"))
    t.request_deployment("run", "prod").raise_for_state()
    return t


def kinds(result) -> list[tuple[str, str]]:
    return [(str(r.key), r.kind.value) for r in result.records]


class TestScan:
    def test_clean_environment(self, live: Tandem):
        result = live.request_drift_scan("prod")
        assert result.clean
        assert result.commit_hash == live.get_track("run").head

    def test_classifies_each_kind(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        live.delete_live("prod", B)
        live.edit_live("prod", flow("C"))
        result = live.request_drift_scan("prod")
        assert kinds(result) == [
            ("Flow:A", "modified"),
            ("Flow:B", "deleted-live-only"),
            ("Flow:C", "added-live-only"),
        ]
        assert all(r.severity == DriftSeverity.WARNING for r in result.records)

    def test_scan_is_read_only(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        before_live = live.live_state("prod")
        head = live.get_track("run").head
        live.request_drift_scan("prod")
        assert live.live_state("prod") == before_live
        assert live.get_track("run").head == head
        assert live.get_environment("prod").last_applied_commit == head

    def test_repeated_scans_reuse_records(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        first = live.request_drift_scan("prod")
        second = live.request_drift_scan("prod")
        assert [r.record_id for r in second.records] == [r.record_id for r in first.records]
        assert second.records[0].detected_at == first.records[0].detected_at

    def test_reverted_edit_is_reconciled(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        live.request_drift_scan("prod")
        live.edit_live("prod", flow("A"))
        assert live.request_drift_scan("prod").clean
        records = live.drift_records("prod", include_resolved=True)
        assert [r.resolution for r in records] == [DriftResolution.RECONCILED]
        assert live.drift_records("prod") == []

    def test_kind_change_opens_new_record(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        live.request_drift_scan("prod")
        live.delete_live("prod", A)
        result = live.request_drift_scan("prod")
        assert kinds(result) == [("Flow:A", "deleted-live-only")]
        closed = [r for r in live.drift_records("prod", include_resolved=True) if not r.is_open]
        assert [r.kind for r in closed] == [DriftKind.MODIFIED]

    def test_stale_drift_is_critical(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        live.request_drift_scan("prod")
        later = datetime.now(timezone.utc) + live.config.drift_staleness + timedelta(minutes=1)
        result = live.request_drift_scan("prod", now=later)
        assert [r.severity for r in result.records] == [DriftSeverity.CRITICAL]
        event = live.events("drift_detected")[-1]
        assert event.critical == 1
        assert live.drift_records("prod", now=later)[0].severity == DriftSeverity.CRITICAL

    def test_drift_event(self, live: Tandem):
        sink = RecordingSink()
        live.subscribe(sink)
        assert live.request_drift_scan("prod").clean
        assert sink.events == []
        live.edit_live("prod", flow("A", label="hand edit"))
        result = live.request_drift_scan("prod")
        assert sink.kinds() == ["drift_detected"]
        assert sink.events[0].scan_id == result.scan_id
        assert sink.events[0].records == ["modified Flow:A"]

    def test_never_deployed_environment(self, t: Tandem):
        t.create_environment("legacy", initial=[flow("A"), flow("B")])
        result = t.request_drift_scan("legacy")
        assert result.commit_hash is None
        assert kinds(result) == [("Flow:A", "added-live-only"), ("Flow:B", "added-live-only")]

    def test_idempotent_scan(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        first = live.request_drift_scan("prod", request_id="scan-1")
        again = live.request_drift_scan("prod", request_id="scan-1")
        assert again.scan_id == first.scan_id
        assert len(live.events("drift_detected")) == 1

    def test_unknown_environment(self, t: Tandem):
        with pytest.raises(EnvironmentNotFoundError):
            t.request_drift_scan("nowhere")


class TestAbsorb:
    def test_absorb_all(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        live.edit_live("prod", flow("C"))
        live.request_drift_scan("prod")

        info = live.absorb_drift("prod", author="ops")
        assert info.metadata["absorbed_from"] == "prod"
        assert info.author == "ops"
        assert live.get_track("run").head == info.commit_hash
        assert live.get_environment("prod").last_applied_commit == info.commit_hash
        assert live.state_at("run") == live.live_state("prod")
        assert live.request_drift_scan("prod").clean
        resolutions = {r.resolution for r in live.drift_records("prod", include_resolved=True)}
        assert resolutions == {DriftResolution.ABSORBED}

    def test_absorb_selected_keys(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        live.delete_live("prod", B)
        live.request_drift_scan("prod")

        info = live.absorb_drift("prod", ["Flow:B"])
        assert [str(c) for c in info.changes] == ["delete Flow:B"]
        remaining = live.request_drift_scan("prod")
        assert kinds(remaining) == [("Flow:A", "modified")]

    def test_nothing_to_absorb(self, live: Tandem):
        head = live.get_track("run").head
        assert live.absorb_drift("prod") is None
        assert live.get_track("run").head == head

    def test_absorb_initial_artifacts(self, t: Tandem):
        t.create_environment("legacy", initial=[flow("A")])
        t.create_track("adopted", TrackRole.RUN, environment="legacy")
        info = t.absorb_drift("legacy")
        assert info.parents == []
        assert A in t.state_at("adopted")
        assert t.request_drift_scan("legacy").clean

    def test_track_moved_past_last_applied(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        modify(live, "run", flow("B", label="v2"))
        with pytest.raises(DriftAbsorbError, match="moved past"):
            live.absorb_drift("prod")

    def test_no_bound_track(self, t: Tandem):
        t.create_environment("dev", initial=[flow("A")])
        with pytest.raises(DriftAbsorbError, match="no bound track"):
            t.absorb_drift("dev")

    def test_locked_track(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        with live._locks.hold_track("run", owner="other"):
            with pytest.raises(TrackLockedError):
                live.absorb_drift("prod")

    def test_absorbed_drift_then_deploy_is_clean(self, live: Tandem):
        live.edit_live("prod", flow("A", label="hand edit"))
        live.absorb_drift("prod")
        modify(live, "run", flow("A", label="v3"))
        job = live.request_deployment("run", "prod")
        job.raise_for_state()
        assert live.live_state("prod")[A] == flow("A", label="v3")
