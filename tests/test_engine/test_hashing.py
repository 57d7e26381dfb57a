"""Tests for deterministic hashing helpers."""

from __future__ import annotations

from tandem.engine.hashing import canonical_json, commit_hash, content_hash


class TestCanonicalJson:
    def test_key_order_independent(self):
        assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1})

    def test_compact(self):
        assert canonical_json({"a": [1, 2]}) == b'{"a":[1,2]}'

    def test_unicode_kept(self):
        assert canonical_json({"k": "é"}) == '{"k":"é"}'.encode()


class TestHashes:
    def test_content_hash_stable(self):
        assert content_hash({"x": 1}) == content_hash({"x": 1})
        assert len(content_hash({"x": 1})) == 64

    def test_commit_hash_depends_on_parents(self):
        args = ("run", [], [{"kind": "add", "key": "Flow:A", "content_hash": "h"}], "2026-01-01T00:00:00")
        root = commit_hash(*args)
        assert root == commit_hash(*args)
        assert commit_hash("run", ["p"], args[2], args[3]) != root

    def test_message_only_included_when_set(self):
        changes = [{"kind": "delete", "key": "Flow:A", "content_hash": None}]
        plain = commit_hash("run", [], changes, "t")
        assert commit_hash("run", [], changes, "t", None) == plain
        assert commit_hash("run", [], changes, "t", "msg") != plain
