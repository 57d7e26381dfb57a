"""Tests for the event outbox, notification sinks and retrofit-lag checks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from tandem import RetrofitLagExceeded, Tandem

from tests.conftest import RecordingSink, flow, seed


class TestOutbox:
    def test_events_are_recorded_without_subscribers(self, t: Tandem):
        seed(t, "run", flow("A"))
        t.request_deployment("run", "prod")
        recorded = t.events("deployment_state_changed")
        assert [e.to_state for e in recorded][-1] == "deployed"
        assert len(t.events(limit=2)) == 2

    def test_sinks_receive_events_after_commit(self, t: Tandem):
        sink = RecordingSink()
        t.subscribe(sink)
        seed(t, "run", flow("A"))
        t.request_deployment("run", "prod")
        stored = [e.event_id for e in t.events("deployment_state_changed")]
        assert [e.event_id for e in sink.events] == stored

    def test_failing_sink_is_logged_and_skipped(self, t: Tandem, caplog):
        class Broken:
            def notify(self, event):
                raise RuntimeError("pager offline")

        after = RecordingSink()
        t.subscribe(Broken())
        t.subscribe(after)
        seed(t, "run", flow("A"))
        with caplog.at_level(logging.ERROR, logger="tandem.operations.outbox"):
            job = t.request_deployment("run", "prod")
        assert job.state == "deployed"
        assert "pager offline" in caplog.text
        assert len(after.events) == 5

    def test_unsubscribe(self, t: Tandem):
        sink = RecordingSink()
        t.subscribe(sink)
        t.unsubscribe(sink)
        t.unsubscribe(sink)
        seed(t, "run", flow("A"))
        t.request_deployment("run", "prod")
        assert sink.events == []

    def test_subscribe_checks_protocol(self, t: Tandem):
        with pytest.raises(TypeError):
            t.subscribe(object())


class TestRetrofitLag:
    def test_fresh_commits_do_not_lag(self, t: Tandem):
        seed(t, "run", flow("A"))
        assert t.check_retrofit_lag() == []

    def test_old_unmerged_commit_lags(self, t: Tandem):
        first = seed(t, "run", flow("A"))
        seed(t, "run", flow("B"))
        later = datetime.now(timezone.utc) + t.config.retrofit_lag + timedelta(hours=1)

        sink = RecordingSink()
        t.subscribe(sink)
        events = t.check_retrofit_lag(now=later)
        assert len(events) == 1
        event = events[0]
        assert isinstance(event, RetrofitLagExceeded)
        assert (event.source_track, event.target_track) == ("run", "build")
        assert event.oldest_commit == first
        assert event.pending_commits == 2
        assert sink.kinds() == ["retrofit_lag_exceeded"]

    def test_retrofitted_commits_do_not_lag(self, t: Tandem):
        seed(t, "run", flow("A"))
        t.request_retrofit("run", "build")
        later = datetime.now(timezone.utc) + t.config.retrofit_lag + timedelta(hours=1)
        assert t.check_retrofit_lag(now=later) == []

    def test_lag_logged_as_warning(self, t: Tandem, caplog):
        seed(t, "run", flow("A"))
        later = datetime.now(timezone.utc) + timedelta(days=30)
        with caplog.at_level(logging.WARNING, logger="tandem.tandem"):
            t.check_retrofit_lag(now=later)
        assert "Retrofit lag run -> build" in caplog.text
