"""
ResourceNode and Stack: the declared desired state.

A Stack is an ordered collection of ResourceNodes plus the outputs it
exports. Declaration order is significant: it breaks ties between
independent resources so plans are deterministic.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set
from .errors import DuplicateNodeError
from .values import Reference, iter_references


@dataclass
class ResourceNode:
    """
    A single declared resource.

    Attributes:
        id: Unique identifier within the stack
        kind: Resource kind, selects the provider adapter (e.g. "memory.Network")
        inputs: Desired inputs; literals, References, Interpolate or Computed values
        depends_on: Ids that must be applied first even though no output is read
        protect: A protected resource is never replaced or destroyed
        provider_handle: Opaque per-node provider handle, passed through untouched
        metadata: Free-form metadata for logging/debugging
    """
    id: str
    kind: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    protect: bool = False
    provider_handle: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Convert mutable sets to frozensets."""
        if not isinstance(self.depends_on, frozenset):
            object.__setattr__(self, 'depends_on', frozenset(self.depends_on))

    def references(self) -> List[Reference]:
        """All output references in the inputs, in declaration order."""
        refs: List[Reference] = []
        for value in self.inputs.values():
            refs.extend(iter_references(value))
        return refs

    def dependency_ids(self) -> Set[str]:
        """Ids this node must be applied after (data and ordering-only)."""
        deps = {ref.node_id for ref in self.references()}
        deps.update(self.depends_on)
        deps.discard(self.id)
        return deps

    def __repr__(self) -> str:
        return (
            f"ResourceNode(id={self.id!r}, kind={self.kind!r}, "
            f"inputs={sorted(self.inputs)}, depends_on={set(self.depends_on)}, "
            f"protect={self.protect})"
        )

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ResourceNode):
            return NotImplemented
        return self.id == other.id


@dataclass
class Stack:
    """
    The complete desired state for one run.

    Attributes:
        name: Stack name (used for logging and as the state namespace)
        nodes: Resource declarations in declaration order
        exports: Exported output name -> Reference (or literal)
    """
    name: str = "default"
    nodes: List[ResourceNode] = field(default_factory=list)
    exports: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        seen: Set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise DuplicateNodeError(node.id)
            seen.add(node.id)

    def add(
        self,
        id: str,
        kind: str,
        inputs: Optional[Dict[str, Any]] = None,
        depends_on: Iterable[str] = (),
        protect: bool = False,
        **metadata: Any,
    ) -> ResourceNode:
        """Declare a resource and return it; a Reference to it is `node_ref(id)`."""
        if any(n.id == id for n in self.nodes):
            raise DuplicateNodeError(id)
        node = ResourceNode(
            id=id,
            kind=kind,
            inputs=dict(inputs or {}),
            depends_on=frozenset(depends_on),
            protect=protect,
            metadata=metadata,
        )
        self.nodes.append(node)
        return node

    def export(self, name: str, value: Any) -> None:
        self.exports[name] = value

    def get(self, node_id: str) -> Optional[ResourceNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return f"Stack(name={self.name!r}, nodes={len(self.nodes)}, exports={len(self.exports)})"


def node_ref(node_id: str, output: str = "id") -> Reference:
    """Shorthand for Reference(node_id, output)."""
    return Reference(node_id, output)
