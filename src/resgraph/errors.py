"""
Exception taxonomy for resgraph.

Graph and planning errors are fatal for a run and are raised before any
provider call is made. Provider errors are scoped to a single operation and
only surface to callers through PartialRunError.
"""
from __future__ import annotations
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .executor import ExecutionResult


class ResgraphError(Exception):
    """Base class for every error raised by resgraph."""
    pass


class ConfigError(ResgraphError):
    """Raised for invalid stack declarations or engine settings."""
    pass


class GraphError(ResgraphError):
    """Raised when the declared resources do not form a valid graph."""
    pass


class DuplicateNodeError(GraphError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate resource id: {node_id!r}")


class UnresolvedReferenceError(GraphError):
    """A node references (or depends on) a node that was not declared."""

    def __init__(self, node_id: str, source_id: str):
        self.node_id = node_id
        self.source_id = source_id
        super().__init__(
            f"Resource {node_id!r} references undeclared resource {source_id!r}"
        )


class CycleError(GraphError):
    """
    A dependency cycle was found.

    `cycle` holds the full path, with the first node repeated at the end,
    e.g. ["a", "b", "a"].
    """

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class PlanError(ResgraphError):
    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Cannot plan {node_id!r}: {reason}")


class ProviderError(ResgraphError):
    """
    A provider call failed.

    Carries the provider-specific detail so it can be reported per node.
    """

    def __init__(
        self,
        detail: str,
        node_id: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        self.detail = detail
        self.node_id = node_id
        self.operation = operation
        prefix = ""
        if operation and node_id:
            prefix = f"{operation} {node_id!r}: "
        elif node_id:
            prefix = f"{node_id!r}: "
        super().__init__(f"{prefix}{detail}")


class NotFoundError(ProviderError):
    """Raised by Provider.read when the resource no longer exists."""
    pass


class StateStoreError(ResgraphError):
    """A state record could not be persisted."""
    pass


class PartialRunError(ResgraphError):
    """
    Raised after a run in which at least one node Failed or was Skipped.

    The complete per-node outcome is available on `result`.
    """

    def __init__(self, result: "ExecutionResult"):
        self.result = result
        failed = result.failed
        skipped = result.skipped
        super().__init__(
            f"Run finished with {len(failed)} failed and {len(skipped)} skipped "
            f"resources (failed={failed}, skipped={skipped})"
        )

    @property
    def succeeded(self) -> List[str]:
        return self.result.succeeded

    @property
    def failed(self) -> List[str]:
        return self.result.failed

    @property
    def skipped(self) -> List[str]:
        return self.result.skipped
