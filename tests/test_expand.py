"""Tests for dependency expansion of a deployment's changed set."""

from __future__ import annotations

from tandem import Artifact, ArtifactKey, ref
from tandem.operations.expand import expand, reference_index


def key(text: str) -> ArtifactKey:
    return ArtifactKey.parse(text)


def art(text: str, *refs: str, version: int = 1, **flags) -> Artifact:
    children = {f"r{i}": ref(r) for i, r in enumerate(refs)}
    children["version"] = version
    return Artifact.build(text, children, **flags)


def state(*artifacts: Artifact) -> dict[ArtifactKey, Artifact]:
    return {a.key: a for a in artifacts}


class TestReferenceIndex:
    def test_edges_are_undirected(self):
        index = reference_index(state(art("Permission:P", "Field:F"), art("Field:F")))
        assert index[key("Permission:P")] == {key("Field:F")}
        assert index[key("Field:F")] == {key("Permission:P")}

    def test_self_reference_ignored(self):
        assert reference_index(state(art("Flow:A", "Flow:A"))) == {}


class TestExpand:
    def test_pulls_changed_neighbour(self):
        target = state(art("Permission:P", "Field:F", version=2), art("Field:F", version=2))
        live = state(art("Permission:P", "Field:F"), art("Field:F"))
        result = expand([key("Permission:P")], target, live, max_hops=3)
        assert result.keys == [key("Field:F"), key("Permission:P")]
        assert result.pulled == {key("Field:F"): 1}

    def test_unchanged_neighbour_stops_walk(self):
        # P -> F -> G; F already live, so G is never reached
        target = state(
            art("Permission:P", "Field:F", version=2),
            art("Field:F", "Field:G"),
            art("Field:G", version=2),
        )
        live = state(art("Permission:P", "Field:F"), art("Field:F", "Field:G"), art("Field:G"))
        result = expand([key("Permission:P")], target, live, max_hops=3)
        assert result.keys == [key("Permission:P")]

    def test_hop_limit(self):
        chain = [art(f"Flow:{c}", f"Flow:{n}", version=2) for c, n in zip("ABC", "BCD")]
        target = state(*chain, art("Flow:D", version=2))
        live: dict = {}
        one = expand([key("Flow:A")], target, live, max_hops=1)
        assert one.pulled == {key("Flow:B"): 1}
        three = expand([key("Flow:A")], target, live, max_hops=3)
        assert three.pulled == {key("Flow:B"): 1, key("Flow:C"): 2, key("Flow:D"): 3}
        assert expand([key("Flow:A")], target, live, max_hops=0).keys == [key("Flow:A")]

    def test_reverse_edges_are_followed(self):
        # F changed; P references F and is also out of date on the target
        target = state(art("Permission:P", "Field:F", version=2), art("Field:F", version=2))
        live = state(art("Permission:P", "Field:F"), art("Field:F"))
        result = expand([key("Field:F")], target, live, max_hops=1)
        assert result.keys == [key("Field:F"), key("Permission:P")]

    def test_excluded_type_is_not_pulled_or_walked(self):
        target = state(
            art("Flow:A", "Profile:X", version=2),
            art("Profile:X", "Flow:B", version=2),
            art("Flow:B", version=2),
        )
        result = expand([key("Flow:A")], target, {}, max_hops=3, excluded_types={"Profile"})
        assert result.keys == [key("Flow:A")]

    def test_flagged_artifact_is_not_pulled(self):
        target = state(
            art("Flow:A", "Flow:B", version=2),
            art("Flow:B", version=2, exclude_from_expansion=True),
        )
        assert expand([key("Flow:A")], target, {}, max_hops=3).keys == [key("Flow:A")]

    def test_excluded_seed_still_deploys(self):
        target = state(art("Profile:X", version=2))
        result = expand([key("Profile:X")], target, {}, max_hops=3, excluded_types={"Profile"})
        assert result.keys == [key("Profile:X")]

    def test_deleted_artifact_references_come_from_base(self):
        # A is deleted by the change; its old reference to B only exists in base
        base = state(art("Flow:A", "Flow:B"), art("Flow:B"))
        target = state(art("Flow:B", version=2))
        live = dict(base)
        result = expand([key("Flow:A")], target, live, max_hops=1, base_state=base)
        assert result.pulled == {key("Flow:B"): 1}
