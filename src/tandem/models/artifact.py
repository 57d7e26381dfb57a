"""Artifact domain model for Tandem.

An artifact is a named, typed configuration unit whose body is a tree of
tagged nodes:

- ``Leaf``: a scalar (or opaque JSON) value.
- ``Reference``: a pointer to another artifact by key.
- ``Container``: keyed children, either ordered or unordered.

Identity is ``(type, name)``.  Comparison is structural: the canonical form
sorts the children of unordered containers, so reordering non-semantic
children never registers as a change.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from tandem.engine.hashing import canonical_json, content_hash

# A region is the child path of a leaf or reference inside an artifact body.
Region = tuple[str, ...]

ORDER_MARKER = "#order"
FLAG_REGION: Region = ("@exclude_from_expansion",)


class ArtifactKey(BaseModel):
    """Identity of an artifact: ``(type, name)``."""

    model_config = ConfigDict(frozen=True)

    type: str
    name: str

    @classmethod
    def parse(cls, text: str) -> ArtifactKey:
        """Parse ``"Type:Name"``.  The name may itself contain colons."""
        type_, sep, name = text.partition(":")
        if not sep or not type_ or not name:
            raise ValueError(f"Invalid artifact key {text!r}, expected 'Type:Name'")
        return cls(type=type_, name=name)

    def __str__(self) -> str:
        return f"{self.type}:{self.name}"

    def __repr__(self) -> str:
        return f"ArtifactKey({self})"

    def __lt__(self, other: ArtifactKey) -> bool:
        return (self.type, self.name) < (other.type, other.name)


class Leaf(BaseModel):
    kind: Literal["leaf"] = "leaf"
    value: Any = None


class Reference(BaseModel):
    kind: Literal["ref"] = "ref"
    target: ArtifactKey


class Container(BaseModel):
    """Keyed child elements.  ``ordered`` makes child order significant."""

    kind: Literal["container"] = "container"
    ordered: bool = False
    children: dict[str, Node] = {}


Node = Annotated[Union[Leaf, Reference, Container], Field(discriminator="kind")]

Container.model_rebuild()


def canonical(node: Leaf | Reference | Container) -> Any:
    """Canonical JSON-able form of a node, used for equality and hashing."""
    if isinstance(node, Leaf):
        # JSON text keeps 1, 1.0 and True apart.
        return {"leaf": canonical_json(node.value).decode("utf-8")}
    if isinstance(node, Reference):
        return {"ref": str(node.target)}
    items = [[name, canonical(child)] for name, child in node.children.items()]
    if not node.ordered:
        items.sort(key=lambda item: item[0])
    return {"container": items, "ordered": node.ordered}


def nodes_equal(
    a: Leaf | Reference | Container | None,
    b: Leaf | Reference | Container | None,
) -> bool:
    """Structural equality.  ``None`` stands for an absent node."""
    if a is None or b is None:
        return a is None and b is None
    return canonical(a) == canonical(b)


def iter_regions(
    node: Leaf | Reference | Container, path: Region = ()
) -> list[tuple[Region, Leaf | Reference]]:
    """Every leaf/reference region of a node with its path."""
    if isinstance(node, Container):
        out: list[tuple[Region, Leaf | Reference]] = []
        for name, child in node.children.items():
            out.extend(iter_regions(child, path + (name,)))
        return out
    return [(path, node)]


class Artifact(BaseModel):
    """A versioned, structurally comparable configuration unit."""

    type: str
    name: str
    body: Container = Container()
    exclude_from_expansion: bool = False

    @property
    def key(self) -> ArtifactKey:
        return ArtifactKey(type=self.type, name=self.name)

    def canonical(self) -> dict:
        return {
            "type": self.type,
            "name": self.name,
            "body": canonical(self.body),
            "exclude_from_expansion": self.exclude_from_expansion,
        }

    def content_hash(self) -> str:
        """SHA-256 of the canonical form (order-insensitive where allowed)."""
        return content_hash(self.canonical())

    def structurally_equal(self, other: Artifact | None) -> bool:
        if other is None:
            return False
        return self.canonical() == other.canonical()

    def references(self) -> set[ArtifactKey]:
        """All artifact keys referenced anywhere in the body."""
        return {
            node.target
            for _, node in iter_regions(self.body)
            if isinstance(node, Reference)
        }

    @classmethod
    def build(
        cls,
        key: ArtifactKey | str,
        children: dict[str, Any] | None = None,
        *,
        ordered: bool = False,
        exclude_from_expansion: bool = False,
    ) -> Artifact:
        """Convenience constructor from plain Python values.

        Dicts become unordered containers, ``Reference``/``Container``/``Leaf``
        instances are kept, everything else becomes a leaf.
        """
        if isinstance(key, str):
            key = ArtifactKey.parse(key)
        return cls(
            type=key.type,
            name=key.name,
            body=Container(ordered=ordered, children=_coerce_children(children or {})),
            exclude_from_expansion=exclude_from_expansion,
        )

    def __str__(self) -> str:
        return str(self.key)


def ref(key: ArtifactKey | str) -> Reference:
    """Shorthand for a reference node."""
    if isinstance(key, str):
        key = ArtifactKey.parse(key)
    return Reference(target=key)


def _coerce(value: Any) -> Leaf | Reference | Container:
    if isinstance(value, (Leaf, Reference, Container)):
        return value
    if isinstance(value, dict):
        return Container(children=_coerce_children(value))
    return Leaf(value=value)


def _coerce_children(values: dict[str, Any]) -> dict[str, Leaf | Reference | Container]:
    return {name: _coerce(value) for name, value in values.items()}
