"""
resgraph: Declarative resource dependency graphs and provisioning.

This package provides a complete system for provisioning resources with:
- Declarative resources whose inputs may reference other resources' outputs
- Automatic dependency discovery and cycle detection
- Diff-based planning (create, update in place, replace, delete, no-op)
- Concurrent execution with failure isolation and per-record state commits
- Drift refresh, retries, timeouts, and structured tracing

Core Components:
- Stack / ResourceNode: the declared desired state
- Reference / Interpolate / Computed: cross-resource input values
- KindRegistry / KindSpec: per-kind provider and field policies
- Planner: diffs the graph against stored state
- Executor: applies plans with graph-parallel concurrency
- apply_stack(): High-level entry point

Example:
    >>> from resgraph import Stack, Reference, MemoryStateStore, default_registry, apply_stack_sync
    >>>
    >>> stack = Stack("demo")
    >>> _ = stack.add("net", "memory.Network", {"cidr": "10.0.0.0/16"})
    >>> _ = stack.add("fw", "memory.Firewall", {"network": Reference("net", "id")})
    >>> _ = stack.add("vm", "memory.Instance", {
    ...     "network": Reference("net", "id"),
    ...     "firewall": Reference("fw", "id"),
    ... })
    >>> stack.export("vm_link", Reference("vm", "self_link"))
    >>>
    >>> registry = default_registry()
    >>> store = MemoryStateStore()
    >>> result = apply_stack_sync(stack, registry, store)
    >>> sorted(s.value for s in result.statuses().values())
    ['created', 'created', 'created']
    >>> rerun = apply_stack_sync(stack, registry, store)
    >>> sorted(s.value for s in rerun.statuses().values())
    ['noop', 'noop', 'noop']
"""

from .errors import (
    ResgraphError,
    ConfigError,
    GraphError,
    DuplicateNodeError,
    UnresolvedReferenceError,
    CycleError,
    PlanError,
    ProviderError,
    NotFoundError,
    StateStoreError,
    PartialRunError,
)

from .values import (
    Literal,
    Reference,
    Computed,
    Interpolate,
    Unknown,
)

from .resource import (
    ResourceNode,
    Stack,
    node_ref,
)

from .kinds import (
    FieldPolicy,
    KindSpec,
    KindRegistry,
)

from .graph import (
    Graph,
    build_graph,
)

from .planner import (
    Operation,
    OperationKind,
    Plan,
    Planner,
)

from .executor import (
    Executor,
    ExecutionResult,
    NodeResult,
    NodeStatus,
    RunContext,
)

from .state import (
    StateRecord,
    StateStore,
    MemoryStateStore,
    FileStateStore,
    MongoStateStore,
)

from .providers import (
    Provider,
    InMemoryProvider,
    LocalCommandProvider,
    default_registry,
)

from .refresh import (
    RefreshReport,
    refresh_state,
)

from .config import (
    EngineConfig,
    configure_logging,
)

from .loader import (
    load_stack,
    parse_stack,
)

from .run import (
    preview,
    preview_sync,
    apply_stack,
    apply_stack_sync,
    destroy_stack,
    destroy_stack_sync,
    execute,
    open_store,
    read_exports,
)

__all__ = [
    # Errors
    "ResgraphError",
    "ConfigError",
    "GraphError",
    "DuplicateNodeError",
    "UnresolvedReferenceError",
    "CycleError",
    "PlanError",
    "ProviderError",
    "NotFoundError",
    "StateStoreError",
    "PartialRunError",
    # Values
    "Literal",
    "Reference",
    "Computed",
    "Interpolate",
    "Unknown",
    # Declarations
    "ResourceNode",
    "Stack",
    "node_ref",
    "FieldPolicy",
    "KindSpec",
    "KindRegistry",
    # Graph and planning
    "Graph",
    "build_graph",
    "Operation",
    "OperationKind",
    "Plan",
    "Planner",
    # Execution
    "Executor",
    "ExecutionResult",
    "NodeResult",
    "NodeStatus",
    "RunContext",
    # State
    "StateRecord",
    "StateStore",
    "MemoryStateStore",
    "FileStateStore",
    "MongoStateStore",
    "RefreshReport",
    "refresh_state",
    # Providers
    "Provider",
    "InMemoryProvider",
    "LocalCommandProvider",
    "default_registry",
    # Configuration and loading
    "EngineConfig",
    "configure_logging",
    "load_stack",
    "parse_stack",
    # High-level API
    "preview",
    "preview_sync",
    "apply_stack",
    "apply_stack_sync",
    "destroy_stack",
    "destroy_stack_sync",
    "execute",
    "open_store",
    "read_exports",
]

__version__ = "1.0.0"
