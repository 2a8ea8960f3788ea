"""
Executor: applies plans with graph-parallel concurrency.

This module provides the Executor class that executes plans with:
- One task per operation; an operation starts once everything it depends on
  has finished, and independent branches run concurrently
- A run-wide concurrency bound plus optional per-kind caps
- Lazy input resolution against the write-once output cache
- Per-record state commits as soon as each operation succeeds
- Failure isolation: a failed node skips its dependents only
- Timeouts and retries for kinds marked retryable
- Run-level cancellation and structured tracing
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from .cells import CellNotReady, OutputCache
from .concurrency.executors import accepts_kwarg, call_maybe_async
from .errors import NotFoundError, PartialRunError, ProviderError, StateStoreError
from .kinds import FieldPolicy, KindRegistry, KindSpec
from .planner import Operation, OperationKind, Plan, field_diff
from .state.base import StateRecord, StateStore
from .values import (
    contains_unknown,
    inputs_hash,
    iter_references,
    normalize,
    resolve_inputs,
    resolve_value,
)

logger = logging.getLogger(__name__)


class NodeStatus(Enum):
    """Status of a node within a run."""
    PENDING = "pending"
    RUNNING = "running"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NOOP = "noop"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal_ok(self) -> bool:
        return self in (NodeStatus.CREATED, NodeStatus.UPDATED, NodeStatus.DELETED, NodeStatus.NOOP)


@dataclass
class NodeResult:
    """Outcome of all operations for one node."""
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    action: Optional[OperationKind] = None
    provider_id: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Exception] = None
    reason: str = ""
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    attempts: int = 0

    @property
    def duration(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return None

    @property
    def success(self) -> bool:
        return self.status.terminal_ok


@dataclass
class ExecutionResult:
    """Per-node outcome of a run plus the outputs it produced."""
    stack: str
    results: Dict[str, NodeResult]
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    exports: Dict[str, Any] = field(default_factory=dict)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    def _with(self, *statuses: NodeStatus) -> List[str]:
        return [nid for nid, r in self.results.items() if r.status in statuses]

    @property
    def succeeded(self) -> List[str]:
        return [nid for nid, r in self.results.items() if r.success]

    @property
    def failed(self) -> List[str]:
        return self._with(NodeStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with(NodeStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def statuses(self) -> Dict[str, NodeStatus]:
        return {nid: r.status for nid, r in self.results.items()}

    def exit_code(self) -> int:
        return 0 if self.ok else 1


@dataclass
class RunContext:
    """Mutable state of one run; never shared between runs."""
    store: StateStore
    cache: OutputCache = field(default_factory=OutputCache)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    kind_semaphores: Dict[str, asyncio.Semaphore] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight calls still finish and commit."""
        if not self.cancel_event.is_set():
            logger.warning("Run cancellation requested")
        self.cancel_event.set()


class Executor:
    """
    Executes plans against providers, committing state as it goes.

    Features:
    - Runs independent operations in parallel, bounded by `concurrency`
    - Dependent operations suspend until their upstream outputs are published
    - Handles timeouts and retries for retryable kinds
    - Provides structured execution traces
    """

    def __init__(
        self,
        registry: KindRegistry,
        store: StateStore,
        concurrency: int = 8,
        max_retries: int = 0,
        default_timeout: Optional[float] = None,
        retry_backoff: float = 1.0,
        enable_tracing: bool = True,
    ):
        """
        Initialize the executor.

        Args:
            registry: Kind registry resolving kinds to providers
            store: State store receiving per-record commits
            concurrency: Maximum operations in flight
            max_retries: Retries for kinds marked retryable
            default_timeout: Provider call timeout when the kind sets none
            retry_backoff: Base seconds for exponential backoff between retries
            enable_tracing: Whether to record an execution trace
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.registry = registry
        self.store = store
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.default_timeout = default_timeout
        self.retry_backoff = retry_backoff
        self.enable_tracing = enable_tracing

    async def apply(
        self,
        plan: Plan,
        concurrency: Optional[int] = None,
        context: Optional[RunContext] = None,
        raise_on_failure: bool = True,
    ) -> ExecutionResult:
        """
        Execute a plan.

        Args:
            plan: The Plan to execute
            concurrency: Overrides the executor's concurrency bound for this run
            context: Run context (pass one to be able to cancel the run)
            raise_on_failure: Raise PartialRunError if any node failed or was skipped

        Returns:
            ExecutionResult with a terminal status for every node in the plan

        Raises:
            PartialRunError: if raise_on_failure and the run was not fully successful
        """
        ctx = context or RunContext(store=self.store)
        limit = concurrency or self.concurrency
        logger.info(
            f"Starting apply of stack {plan.stack!r}: {len(plan.operations)} operations, "
            f"concurrency {limit}"
        )

        results: Dict[str, NodeResult] = {}
        for op in plan.operations:
            result = results.setdefault(op.node_id, NodeResult(node_id=op.node_id))
            result.action = op.kind

        done = {op.key: asyncio.Event() for op in plan.operations}
        op_status: Dict[str, NodeStatus] = {}
        semaphore = asyncio.Semaphore(limit)

        tasks = [
            asyncio.create_task(
                self._run_operation(op, ctx, results[op.node_id], done, op_status, semaphore),
                name=f"resgraph:{op.key}",
            )
            for op in plan.operations
        ]
        await asyncio.gather(*tasks)

        outputs = ctx.cache.snapshot()
        execution = ExecutionResult(
            stack=plan.stack,
            results=results,
            outputs=outputs,
            exports=self._resolve_exports(plan, ctx.cache),
            trace=list(ctx.trace),
            cancelled=ctx.cancelled,
        )
        self._log_run_summary(execution)

        if raise_on_failure and not execution.ok:
            raise PartialRunError(execution)
        return execution

    async def _run_operation(
        self,
        op: Operation,
        ctx: RunContext,
        result: NodeResult,
        done: Dict[str, asyncio.Event],
        op_status: Dict[str, NodeStatus],
        semaphore: asyncio.Semaphore,
    ) -> None:
        status = NodeStatus.SKIPPED
        try:
            for dep in op.depends_on:
                if not done[dep].is_set():
                    logger.debug(f"[EXEC] {op.key} waiting for {dep}")
                await done[dep].wait()

            blocked = sorted(d for d in op.depends_on if not op_status[d].terminal_ok)
            if blocked:
                reason = f"dependency {', '.join(blocked)} did not complete"
                self._skip(op, ctx, result, reason)
                return
            if ctx.cancelled:
                self._skip(op, ctx, result, "run cancelled")
                return

            async with semaphore:
                if ctx.cancelled:
                    self._skip(op, ctx, result, "run cancelled")
                    return
                status = await self._execute_operation(op, ctx, result)
        except Exception as e:
            # provider and store errors are handled below; this is an engine bug
            logger.exception(f"[EXEC] unexpected error in {op.key}")
            status = NodeStatus.FAILED
            self._fail(op, ctx, result, e)
        finally:
            op_status[op.key] = status
            done[op.key].set()

    async def _execute_operation(self, op: Operation, ctx: RunContext, result: NodeResult) -> NodeStatus:
        if result.start_time is None:
            result.start_time = time.time()
        result.status = NodeStatus.RUNNING
        logger.info(f"[EXEC] {op.kind.value} {op.node_id} ({op.resource_kind})")

        try:
            if op.kind == OperationKind.NOOP:
                status = await self._recheck_noop(op, ctx, result)
            elif op.kind in (OperationKind.CREATE, OperationKind.REPLACE):
                status = await self._create(op, ctx, result)
            elif op.kind == OperationKind.UPDATE:
                status = await self._update(op, ctx, result)
            else:
                status = await self._delete(op, ctx, result)
        except (ProviderError, StateStoreError, CellNotReady) as e:
            self._fail(op, ctx, result, e)
            return NodeStatus.FAILED

        if op.replace:
            # delete half of a replacement; the create reports the node's status
            return status
        result.status = status
        result.end_time = time.time()
        logger.info(
            f"[EXEC] {op.node_id} {status.value}"
            + (f" in {result.duration:.2f}s" if result.duration is not None else "")
        )
        return status

    def _noop(self, op: Operation, ctx: RunContext, result: NodeResult) -> NodeStatus:
        record = op.prior
        result.provider_id = record.provider_id
        result.outputs = dict(record.outputs)
        ctx.cache.publish(op.node_id, record.outputs)
        return NodeStatus.NOOP

    async def _recheck_noop(self, op: Operation, ctx: RunContext, result: NodeResult) -> NodeStatus:
        """
        Planned against recorded outputs; an upstream update in this run may
        have changed them, so referencing nodes are diffed again.
        """
        if op.node is None or next(iter_references(op.node.inputs), None) is None:
            return self._noop(op, ctx, result)
        inputs = self._resolve(op, ctx)
        if inputs_hash(inputs) == op.prior.inputs_hash:
            return self._noop(op, ctx, result)
        logger.info(f"[EXEC] {op.node_id}: upstream outputs changed since planning")
        return await self._update(op, ctx, result, inputs=inputs)

    async def _create(self, op: Operation, ctx: RunContext, result: NodeResult) -> NodeStatus:
        spec = self.registry.get(op.resource_kind)
        inputs = self._resolve(op, ctx)
        provider_id, outputs = await self._call_provider(
            spec, op, ctx, "create", result, op.resource_kind, inputs
        )
        await self._commit(op, ctx, result, spec, str(provider_id), inputs, outputs)
        return NodeStatus.CREATED

    async def _update(
        self,
        op: Operation,
        ctx: RunContext,
        result: NodeResult,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> NodeStatus:
        spec = self.registry.get(op.resource_kind)
        record = op.prior
        if inputs is None:
            inputs = self._resolve(op, ctx)
        diff = field_diff(record.inputs, normalize(inputs))
        if not diff:
            logger.info(f"[EXEC] {op.node_id}: resolved inputs match last apply, nothing to update")
            return self._noop(op, ctx, result)
        replace_fields = sorted(f for f in diff if spec.policy_for(f) == FieldPolicy.REPLACE)
        if replace_fields:
            raise ProviderError(
                f"changes to {', '.join(replace_fields)} require replacement; plan and apply again",
                op.node_id,
                "update",
            )
        outputs = await self._call_provider(
            spec, op, ctx, "update", result, record.provider_id, diff, prior=record
        )
        await self._commit(op, ctx, result, spec, record.provider_id, inputs, outputs)
        return NodeStatus.UPDATED

    async def _delete(self, op: Operation, ctx: RunContext, result: NodeResult) -> NodeStatus:
        record = op.prior
        spec = self.registry.get(record.kind)
        try:
            await self._call_provider(spec, op, ctx, "delete", result, record.provider_id, prior=record)
        except NotFoundError:
            logger.warning(f"[EXEC] {op.node_id} ({record.provider_id}) was already gone")
        await ctx.store.remove(op.node_id)
        logger.debug(f"[STATE] removed {op.node_id}")
        if not op.replace:
            result.provider_id = None
            result.outputs = {}
        return NodeStatus.DELETED

    def _resolve(self, op: Operation, ctx: RunContext) -> Dict[str, Any]:
        """Resolve inputs against published outputs, immediately before the call."""
        inputs = resolve_inputs(op.node.inputs, ctx.cache.lookup)
        if contains_unknown(inputs):
            raise ProviderError("inputs are still unknown at apply time", op.node_id, op.kind.value)
        logger.debug(f"[EXEC] {op.node_id} resolved inputs {sorted(inputs)}")
        return inputs

    async def _commit(
        self,
        op: Operation,
        ctx: RunContext,
        result: NodeResult,
        spec: KindSpec,
        provider_id: str,
        inputs: Dict[str, Any],
        outputs: Dict[str, Any],
    ) -> None:
        normalized_outputs = normalize(dict(outputs or {}))
        record = StateRecord(
            node_id=op.node_id,
            kind=spec.kind,
            inputs_hash=inputs_hash(inputs),
            inputs=normalize(inputs),
            outputs=normalized_outputs,
            provider_id=provider_id,
            dependencies=sorted(op.node.dependency_ids()),
            protect=op.node.protect,
        )
        try:
            await ctx.store.commit(op.node_id, record)
        except StateStoreError:
            logger.error(
                f"[STATE] {op.node_id} was applied as {provider_id!r} but its state could not be saved"
            )
            raise
        result.provider_id = provider_id
        result.outputs = dict(normalized_outputs)
        # publish only after the commit so readers never see unrecorded outputs
        ctx.cache.publish(op.node_id, normalized_outputs)

    async def _call_provider(
        self,
        spec: KindSpec,
        op: Operation,
        ctx: RunContext,
        method_name: str,
        result: NodeResult,
        *args: Any,
        prior: Optional[StateRecord] = None,
    ) -> Any:
        """Invoke one provider method with timeout, retries and tracing."""
        method = getattr(spec.provider, method_name)
        kwargs = {"prior": prior} if prior is not None and accepts_kwarg(method, "prior") else {}
        timeout = spec.timeout or self.default_timeout
        max_attempts = self.max_retries + 1 if spec.retryable else 1
        semaphore = self._kind_semaphore(spec, ctx)

        for attempt in range(1, max_attempts + 1):
            result.attempts += 1
            started = time.time()
            try:
                if semaphore is not None:
                    async with semaphore:
                        value = await self._invoke(method, args, kwargs, timeout)
                else:
                    value = await self._invoke(method, args, kwargs, timeout)
                self._trace_call(op, ctx, method_name, attempt, started, success=True)
                return value
            except NotFoundError as e:
                e.node_id = e.node_id or op.node_id
                e.operation = e.operation or method_name
                self._trace_call(op, ctx, method_name, attempt, started, success=False, error=e)
                raise
            except asyncio.TimeoutError:
                error = ProviderError(f"timed out after {timeout}s", op.node_id, method_name)
            except ProviderError as e:
                e.node_id = e.node_id or op.node_id
                e.operation = e.operation or method_name
                error = e
            except Exception as e:
                error = ProviderError(f"{type(e).__name__}: {e}", op.node_id, method_name)
                error.__cause__ = e

            retry = attempt < max_attempts and not ctx.cancelled
            self._trace_call(op, ctx, method_name, attempt, started, success=False, error=error, retry=retry)
            if not retry:
                logger.error(f"[EXEC] {method_name} {op.node_id} failed: {error.detail}")
                raise error
            delay = self.retry_backoff * (2 ** (attempt - 1))
            logger.warning(
                f"[EXEC] {method_name} {op.node_id} failed: {error.detail} "
                f"(attempt {attempt}/{max_attempts}, retrying in {delay:.1f}s)"
            )
            await asyncio.sleep(delay)

    async def _invoke(self, method, args, kwargs, timeout: Optional[float]) -> Any:
        coro = call_maybe_async(method, *args, **kwargs)
        if timeout:
            return await asyncio.wait_for(coro, timeout=timeout)
        return await coro

    def _kind_semaphore(self, spec: KindSpec, ctx: RunContext) -> Optional[asyncio.Semaphore]:
        if not spec.concurrency_cap:
            return None
        semaphore = ctx.kind_semaphores.get(spec.kind)
        if semaphore is None:
            semaphore = ctx.kind_semaphores[spec.kind] = asyncio.Semaphore(spec.concurrency_cap)
        return semaphore

    def _skip(self, op: Operation, ctx: RunContext, result: NodeResult, reason: str) -> None:
        if result.status not in (NodeStatus.FAILED, NodeStatus.SKIPPED):
            result.status = NodeStatus.SKIPPED
            result.reason = reason
        if op.kind != OperationKind.DELETE:
            ctx.cache.fail(op.node_id, reason)
        logger.warning(f"[EXEC] skipping {op.key}: {reason}")

    def _fail(self, op: Operation, ctx: RunContext, result: NodeResult, error: Exception) -> None:
        result.status = NodeStatus.FAILED
        result.error = error
        result.reason = str(error)
        result.end_time = time.time()
        if op.kind != OperationKind.DELETE or op.replace:
            ctx.cache.fail(op.node_id, str(error))

    def _resolve_exports(self, plan: Plan, cache: OutputCache) -> Dict[str, Any]:
        exports: Dict[str, Any] = {}
        for name, value in plan.exports.items():
            try:
                exports[name] = resolve_value(value, cache.lookup)
            except CellNotReady as e:
                logger.warning(f"Export {name!r} is unavailable: {e}")
        return exports

    def _trace_call(
        self,
        op: Operation,
        ctx: RunContext,
        method_name: str,
        attempt: int,
        started: float,
        success: bool,
        error: Optional[Exception] = None,
        retry: bool = False,
    ) -> None:
        """Record one provider call in the trace."""
        if not self.enable_tracing:
            return

        entry = {
            "node_id": op.node_id,
            "operation": op.key,
            "call": method_name,
            "kind": op.resource_kind,
            "attempt": attempt,
            "success": success,
            "retry": retry,
            "duration": time.time() - started,
            "timestamp": datetime.now().isoformat(),
        }
        if error is not None:
            entry["error"] = str(error)
        ctx.trace.append(entry)

    def _log_run_summary(self, execution: ExecutionResult) -> None:
        counts: Dict[str, int] = {}
        for result in execution.results.values():
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        level = logging.INFO if execution.ok else logging.ERROR
        logger.log(
            level,
            f"Apply of stack {execution.stack!r} finished: "
            + ", ".join(f"{n} {s}" for s, n in sorted(counts.items()))
        )
        for node_id, result in execution.results.items():
            if not result.success:
                logger.log(level, f"  {node_id}: {result.status.value} ({result.reason})")

