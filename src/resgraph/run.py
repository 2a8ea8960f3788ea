"""
High-level entry points.

This module ties the pieces together for one run:
declared stack -> build_graph -> Planner -> Executor -> state store -> exports.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, List, Optional
from .config import EngineConfig
from .errors import PartialRunError
from .executor import ExecutionResult, Executor, RunContext
from .graph import build_graph
from .kinds import KindRegistry
from .planner import Plan, Planner
from .refresh import refresh_state
from .resource import Stack
from .state import FileStateStore, MemoryStateStore, StateStore, open_mongo_store
from .values import Unknown, contains_unknown, resolve_value

logger = logging.getLogger(__name__)


def open_store(config: EngineConfig, stack: str = "default") -> StateStore:
    """Open the state backend selected by the config."""
    if config.state_backend == "memory":
        return MemoryStateStore()
    if config.state_backend == "mongodb":
        return open_mongo_store(stack, uri=config.mongo_uri, db_name=config.mongo_db)
    return FileStateStore(config.state_path, stack=stack)


async def preview(
    stack: Stack,
    registry: KindRegistry,
    store: StateStore,
    refresh: bool = False,
) -> Plan:
    """
    Build the graph and plan against the stored state without applying.

    Raises:
        GraphError: invalid references or cycles
        PlanError: protected resources would be replaced/destroyed, unknown kinds
    """
    logger.info(f"Planning stack {stack.name!r} ({len(stack)} resources)")
    graph = build_graph(stack.nodes)
    prior = await store.load()
    if refresh:
        prior = (await refresh_state(store, registry, prior)).records
    planner = Planner(registry)
    plan = planner.plan(graph, prior, stack=stack.name, exports=stack.exports)

    analysis = planner.analyze_parallelism(plan)
    logger.info(
        f"Plan analysis: {analysis['total_operations']} operations, "
        f"{analysis['levels']} execution levels, "
        f"max {analysis['max_parallel']} parallel operations"
    )
    if analysis['bottlenecks']:
        logger.debug(f"Bottleneck operations (>=3 waiting): {analysis['bottlenecks']}")
    return plan


async def apply_stack(
    stack: Stack,
    registry: KindRegistry,
    store: StateStore,
    concurrency: int = 8,
    max_retries: int = 0,
    default_timeout: Optional[float] = None,
    retry_backoff: float = 1.0,
    refresh: bool = False,
    context: Optional[RunContext] = None,
    enable_tracing: bool = True,
    raise_on_failure: bool = True,
) -> ExecutionResult:
    """
    Plan and apply a stack.

    Graph and planning errors are raised before any provider call. Provider
    failures are isolated to their subtree and reported through
    PartialRunError (or on the returned result when raise_on_failure=False).

    Example:
        >>> from resgraph import Stack, Reference, MemoryStateStore, default_registry, apply_stack_sync
        >>> stack = Stack("demo")
        >>> _ = stack.add("net", "memory.Network")
        >>> _ = stack.add("vm", "memory.Instance", {"network": Reference("net", "id")})
        >>> result = apply_stack_sync(stack, default_registry(), MemoryStateStore())
        >>> result.statuses()["vm"].value
        'created'
    """
    plan = await preview(stack, registry, store, refresh=refresh)
    return await execute(
        plan,
        registry,
        store,
        concurrency=concurrency,
        max_retries=max_retries,
        default_timeout=default_timeout,
        retry_backoff=retry_backoff,
        context=context,
        enable_tracing=enable_tracing,
        raise_on_failure=raise_on_failure,
    )


async def destroy_stack(
    registry: KindRegistry,
    store: StateStore,
    stack_name: str = "default",
    concurrency: int = 8,
    max_retries: int = 0,
    default_timeout: Optional[float] = None,
    retry_backoff: float = 1.0,
    context: Optional[RunContext] = None,
    raise_on_failure: bool = True,
) -> ExecutionResult:
    """Delete every recorded resource, dependents first."""
    prior = await store.load()
    plan = Planner(registry).plan_destroy(prior, stack=stack_name)
    return await execute(
        plan,
        registry,
        store,
        concurrency=concurrency,
        max_retries=max_retries,
        default_timeout=default_timeout,
        retry_backoff=retry_backoff,
        context=context,
        raise_on_failure=raise_on_failure,
    )


async def execute(
    plan: Plan,
    registry: KindRegistry,
    store: StateStore,
    concurrency: int = 8,
    max_retries: int = 0,
    default_timeout: Optional[float] = None,
    retry_backoff: float = 1.0,
    context: Optional[RunContext] = None,
    enable_tracing: bool = True,
    raise_on_failure: bool = True,
) -> ExecutionResult:
    """Apply an already computed plan."""
    executor = Executor(
        registry,
        store,
        concurrency=concurrency,
        max_retries=max_retries,
        default_timeout=default_timeout,
        retry_backoff=retry_backoff,
        enable_tracing=enable_tracing,
    )
    try:
        result = await executor.apply(plan, context=context, raise_on_failure=raise_on_failure)
    except PartialRunError as e:
        if enable_tracing:
            _log_trace_summary(e.result.trace, error=True)
        raise

    if enable_tracing:
        _log_trace_summary(result.trace, error=not result.ok)
    return result


async def read_exports(stack: Stack, store: StateStore) -> Dict[str, Any]:
    """Resolve the stack's exports from stored outputs (no provider calls)."""
    records = await store.load()

    def lookup(ref):
        record = records.get(ref.node_id)
        if record is None or ref.output not in record.outputs:
            return Unknown(str(ref))
        return record.outputs[ref.output]

    exports: Dict[str, Any] = {}
    for name, value in stack.exports.items():
        resolved = resolve_value(value, lookup)
        if contains_unknown(resolved):
            logger.warning(f"Export {name!r} is not available yet ({resolved!r})")
            continue
        exports[name] = resolved
    return exports


def preview_sync(stack: Stack, registry: KindRegistry, store: StateStore, **kwargs) -> Plan:
    """Synchronous wrapper for preview()."""
    return asyncio.run(preview(stack, registry, store, **kwargs))


def apply_stack_sync(stack: Stack, registry: KindRegistry, store: StateStore, **kwargs) -> ExecutionResult:
    """
    Synchronous wrapper for apply_stack().

    Useful when calling from synchronous code.
    """
    return asyncio.run(apply_stack(stack, registry, store, **kwargs))


def destroy_stack_sync(registry: KindRegistry, store: StateStore, **kwargs) -> ExecutionResult:
    """Synchronous wrapper for destroy_stack()."""
    return asyncio.run(destroy_stack(registry, store, **kwargs))


def _log_trace_summary(trace: List[Dict[str, Any]], error: bool = False) -> None:
    """Log a summary of the execution trace."""
    if not trace:
        return

    total_nodes = len({entry['node_id'] for entry in trace})
    total_calls = len(trace)
    retries = sum(1 for entry in trace if entry.get('retry', False))
    failures = sum(1 for entry in trace if not entry['success'])

    durations = [entry['duration'] for entry in trace if entry.get('duration')]
    total_time = sum(durations) if durations else 0
    avg_time = total_time / len(durations) if durations else 0

    level = logging.ERROR if error else logging.INFO
    logger.log(
        level,
        f"Execution trace summary: {total_nodes} resources, {total_calls} provider calls, "
        f"{retries} retries, {failures} failures, "
        f"total time {total_time:.2f}s, avg {avg_time:.2f}s/call"
    )

    if durations:
        sorted_by_duration = sorted(
            [entry for entry in trace if entry.get('duration')],
            key=lambda e: e['duration'],
            reverse=True
        )
        logger.debug("Slowest provider calls:")
        for entry in sorted_by_duration[:5]:
            logger.debug(
                f"  {entry['node_id']} ({entry['call']}): {entry['duration']:.2f}s"
            )
