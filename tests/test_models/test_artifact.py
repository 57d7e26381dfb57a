"""Tests for the tagged structural artifact model."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from tandem.models.artifact import (
    Artifact,
    ArtifactKey,
    Container,
    Leaf,
    Reference,
    iter_regions,
    ref,
)

from tests.strategies import artifacts, flat_children


class TestArtifactKey:
    def test_parse_and_str(self):
        key = ArtifactKey.parse("Trigger:X")
        assert key.type == "Trigger"
        assert key.name == "X"
        assert str(key) == "Trigger:X"

    def test_name_may_contain_colons(self):
        key = ArtifactKey.parse("Field:Account:Name")
        assert key.type == "Field"
        assert key.name == "Account:Name"

    @pytest.mark.parametrize("text", ["Trigger", ":X", "Trigger:", ""])
    def test_parse_rejects_malformed(self, text):
        with pytest.raises(ValueError):
            ArtifactKey.parse(text)

    def test_hashable_and_ordered(self):
        a, b = ArtifactKey.parse("Flow:A"), ArtifactKey.parse("Flow:B")
        assert {a, ArtifactKey(type="Flow", name="A")} == {a}
        assert sorted([b, a]) == [a, b]


class TestStructuralEquality:
    def test_unordered_children_order_is_irrelevant(self):
        a = Artifact.build("Layout:L", {"x": 1, "y": 2})
        b = Artifact.build("Layout:L", {"y": 2, "x": 1})
        assert a.structurally_equal(b)
        assert a.content_hash() == b.content_hash()

    @pytest.mark.parametrize("left, right", [(1, True), (0, False), (1, 1.0)])
    def test_leaf_value_type_is_significant(self, left, right):
        a = Artifact.build("Flow:F", {"enabled": left})
        b = Artifact.build("Flow:F", {"enabled": right})
        assert not a.structurally_equal(b)
        assert a.content_hash() != b.content_hash()

    def test_nested_json_value_type_is_significant(self):
        a = Artifact.build("Flow:F", {"opts": Leaf(value=[1, {"on": 1}])})
        b = Artifact.build("Flow:F", {"opts": Leaf(value=[1, {"on": True}])})
        assert not a.structurally_equal(b)

    def test_ordered_children_order_matters(self):
        a = Artifact.build("Flow:F", {"a": 1, "b": 2}, ordered=True)
        b = Artifact.build("Flow:F", {"b": 2, "a": 1}, ordered=True)
        assert not a.structurally_equal(b)
        assert a.content_hash() != b.content_hash()

    def test_flag_is_part_of_identity(self):
        a = Artifact.build("Flow:F", {"a": 1})
        b = Artifact.build("Flow:F", {"a": 1}, exclude_from_expansion=True)
        assert not a.structurally_equal(b)

    def test_not_equal_to_none(self):
        assert not Artifact.build("Flow:F").structurally_equal(None)

    @settings(deadline=None)
    @given(children=flat_children, data=st.data())
    def test_permuting_unordered_children_keeps_hash(self, children, data):
        names = data.draw(st.permutations(list(children)))
        a = Artifact.build("Flow:F", children)
        b = Artifact.build("Flow:F", {n: children[n] for n in names})
        assert a.content_hash() == b.content_hash()

    @settings(deadline=None)
    @given(artifacts)
    def test_json_round_trip_is_structurally_equal(self, artifact):
        loaded = Artifact.model_validate_json(artifact.model_dump_json())
        assert loaded.structurally_equal(artifact)
        assert loaded.content_hash() == artifact.content_hash()


class TestReferencesAndRegions:
    def test_references_found_at_any_depth(self):
        art = Artifact.build(
            "Permission:P",
            {"field": ref("Field:Amount"), "nested": {"deep": ref("Flow:F")}, "x": 1},
        )
        assert art.references() == {
            ArtifactKey.parse("Field:Amount"),
            ArtifactKey.parse("Flow:F"),
        }

    def test_iter_regions_paths(self):
        body = Container(
            children={
                "a": Leaf(value=1),
                "b": Container(children={"c": Reference(target=ArtifactKey.parse("Flow:F"))}),
            }
        )
        paths = [p for p, _ in iter_regions(body)]
        assert paths == [("a",), ("b", "c")]

    def test_build_coerces_values(self):
        art = Artifact.build("Flow:F", {"a": 1, "b": {"c": "x"}, "d": ref("Field:Y")})
        assert isinstance(art.body.children["a"], Leaf)
        assert isinstance(art.body.children["b"], Container)
        assert isinstance(art.body.children["d"], Reference)
        assert art.key == ArtifactKey.parse("Flow:F")
