"""
Planner: diffs desired state against the last applied state.

The planner walks the graph in topological order and decides, per node,
whether it needs a Create, Update, Replace, Delete or nothing at all. It
produces a Plan: operations ordered so that every operation appears after
the operations it depends on.

References are not substituted with live values here. A reference to a node
that is unchanged (or updated in place) is compared using that node's last
recorded outputs; a reference to a node that will be created or replaced is
an Unknown placeholder, which always counts as a change. That is how a
replacement invalidates everything downstream of it.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set, Tuple
import heapq
import logging
from .errors import PlanError
from .graph import Graph
from .kinds import FieldPolicy, KindRegistry, KindSpec
from .resource import ResourceNode
from .state.base import StateRecord
from .values import Reference, Unknown, contains_unknown, inputs_hash, normalize, resolve_inputs

logger = logging.getLogger(__name__)


class OperationKind(Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass
class Operation:
    """
    One unit of work in a plan.

    A replacement is emitted as two operations for the same node: a DELETE
    with `replace=True` followed by a REPLACE that performs the create.

    Attributes:
        key: Unique key within the plan ("create:vm", "delete:vm", ...)
        node_id: Target resource id
        kind: What to do
        resource_kind: The resource's kind (selects the provider)
        diff: field -> (old, new); new values may be Unknown at plan time
        depends_on: Keys of operations that must complete first
        node: Desired declaration (None for pure deletes)
        prior: Last applied record (None for creates)
        replace: True for the delete half of a replacement
        reason: Human readable explanation
    """
    key: str
    node_id: str
    kind: OperationKind
    resource_kind: str
    diff: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    node: Optional[ResourceNode] = None
    prior: Optional[StateRecord] = None
    replace: bool = False
    reason: str = ""

    def __post_init__(self):
        if not isinstance(self.depends_on, frozenset):
            object.__setattr__(self, 'depends_on', frozenset(self.depends_on))

    @property
    def is_change(self) -> bool:
        return self.kind != OperationKind.NOOP

    def __repr__(self) -> str:
        return (
            f"Operation(key={self.key!r}, kind={self.kind.value}, "
            f"diff={sorted(self.diff)}, depends_on={sorted(self.depends_on)})"
        )


@dataclass
class Plan:
    """
    An ordered, validated list of operations.

    Attributes:
        operations: Operations in execution-compatible order
        stack: Stack name
        exports: Exported outputs of the stack (name -> Reference or literal)
        graph: The graph the plan was built from (None for destroy plans)
    """
    operations: List[Operation]
    stack: str = "default"
    exports: Dict[str, Any] = field(default_factory=dict)
    graph: Optional[Graph] = None
    op_map: Dict[str, Operation] = field(default_factory=dict)

    def __post_init__(self):
        self.op_map = {op.key: op for op in self.operations}
        if len(self.op_map) != len(self.operations):
            raise ValueError("Duplicate operation keys in plan")

    def get(self, key: str) -> Optional[Operation]:
        return self.op_map.get(key)

    def for_node(self, node_id: str) -> List[Operation]:
        return [op for op in self.operations if op.node_id == node_id]

    def action(self, node_id: str) -> Optional[OperationKind]:
        """Net action for a node; a delete+create pair reports REPLACE."""
        ops = self.for_node(node_id)
        if not ops:
            return None
        return ops[-1].kind

    def actions(self) -> Dict[str, OperationKind]:
        result: Dict[str, OperationKind] = {}
        for op in self.operations:
            result[op.node_id] = op.kind
        return result

    def summary(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in OperationKind}
        for kind in self.actions().values():
            counts[kind.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(op.is_change for op in self.operations)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def __repr__(self) -> str:
        return f"Plan(stack={self.stack!r}, operations={len(self.operations)}, summary={self.summary()})"


class Planner:
    """
    Planner turns a graph plus prior state into a Plan.

    The planner:
    1. Orders nodes topologically (declaration order breaks ties)
    2. Diffs each node's desired inputs against its StateRecord
    3. Classifies changes using the kind's field policies
    4. Propagates replacements downstream through Unknown placeholders
    5. Deletes recorded nodes that are no longer declared
    6. Refuses to replace or destroy protected nodes
    """

    def __init__(self, registry: KindRegistry):
        self.registry = registry

    def plan(
        self,
        graph: Graph,
        prior_state: Mapping[str, StateRecord],
        stack: str = "default",
        exports: Optional[Dict[str, Any]] = None,
    ) -> Plan:
        """
        Create a plan that converges the prior state to the graph.

        Raises:
            PlanError: unknown kind, or a protected node would be replaced/destroyed
        """
        operations: List[Operation] = []
        actions: Dict[str, OperationKind] = {}
        final_key: Dict[str, str] = {}
        delete_key: Dict[str, str] = {}

        def lookup(ref: Reference) -> Any:
            action = actions.get(ref.node_id)
            record = prior_state.get(ref.node_id)
            if action in (OperationKind.NOOP, OperationKind.UPDATE) and record is not None:
                if ref.output in record.outputs:
                    return record.outputs[ref.output]
            return Unknown(str(ref))

        for node in graph.topological_order():
            spec = self._spec_for(node.id, node.kind)
            record = prior_state.get(node.id)
            desired = resolve_inputs(node.inputs, lookup)
            kind, diff, reason = self._classify(node, spec, record, desired)

            if kind == OperationKind.REPLACE and node.protect:
                raise PlanError(node.id, f"protected resource would be replaced ({reason})")

            deps = {final_key[d] for d in graph.dependencies(node.id)}
            if kind == OperationKind.REPLACE:
                dkey = f"delete:{node.id}"
                operations.append(Operation(
                    key=dkey,
                    node_id=node.id,
                    kind=OperationKind.DELETE,
                    resource_kind=record.kind,
                    node=node,
                    prior=record,
                    replace=True,
                    reason=reason,
                ))
                delete_key[node.id] = dkey
                deps.add(dkey)
                key = f"create:{node.id}"
            else:
                key = f"{kind.value}:{node.id}"

            operations.append(Operation(
                key=key,
                node_id=node.id,
                kind=kind,
                resource_kind=node.kind,
                diff=diff,
                depends_on=frozenset(deps),
                node=node,
                prior=record,
                reason=reason,
            ))
            actions[node.id] = kind
            final_key[node.id] = key

        # recorded but no longer declared
        for node_id, record in prior_state.items():
            if graph.get(node_id) is not None:
                continue
            if record.protect:
                raise PlanError(node_id, "protected resource would be destroyed")
            self._spec_for(node_id, record.kind)
            dkey = f"delete:{node_id}"
            operations.append(Operation(
                key=dkey,
                node_id=node_id,
                kind=OperationKind.DELETE,
                resource_kind=record.kind,
                diff={name: (value, None) for name, value in record.inputs.items()},
                prior=record,
                reason="no longer declared",
            ))
            actions[node_id] = OperationKind.DELETE
            delete_key[node_id] = dkey

        self._order_deletes(operations, prior_state, delete_key, final_key)
        plan = Plan(
            operations=_sort_operations(operations),
            stack=stack,
            exports=dict(exports or {}),
            graph=graph,
        )
        self._log_plan_summary(plan)
        return plan

    def plan_destroy(self, prior_state: Mapping[str, StateRecord], stack: str = "default") -> Plan:
        """Delete every recorded node, dependents first."""
        operations: List[Operation] = []
        delete_key: Dict[str, str] = {}
        for node_id, record in prior_state.items():
            if record.protect:
                raise PlanError(node_id, "protected resource would be destroyed")
            self._spec_for(node_id, record.kind)
            key = f"delete:{node_id}"
            operations.append(Operation(
                key=key,
                node_id=node_id,
                kind=OperationKind.DELETE,
                resource_kind=record.kind,
                diff={name: (value, None) for name, value in record.inputs.items()},
                prior=record,
                reason="destroy",
            ))
            delete_key[node_id] = key

        self._order_deletes(operations, prior_state, delete_key, {})
        plan = Plan(operations=_sort_operations(operations), stack=stack)
        self._log_plan_summary(plan)
        return plan

    def _spec_for(self, node_id: str, kind: str) -> KindSpec:
        try:
            return self.registry.get(kind)
        except KeyError:
            raise PlanError(node_id, f"no provider registered for kind {kind!r}")

    def _classify(
        self,
        node: ResourceNode,
        spec: KindSpec,
        record: Optional[StateRecord],
        desired: Dict[str, Any],
    ) -> Tuple[OperationKind, Dict[str, Tuple[Any, Any]], str]:
        if record is None:
            diff = {name: (None, value) for name, value in desired.items()}
            return OperationKind.CREATE, diff, "not yet created"

        if record.kind != node.kind:
            diff = {"kind": (record.kind, node.kind)}
            return OperationKind.REPLACE, diff, f"kind changed from {record.kind!r}"

        if not contains_unknown(desired) and inputs_hash(desired) == record.inputs_hash:
            return OperationKind.NOOP, {}, "unchanged"

        diff = field_diff(record.inputs, desired)
        if not diff:
            return OperationKind.NOOP, {}, "unchanged"

        replace_fields = sorted(f for f in diff if spec.policy_for(f) == FieldPolicy.REPLACE)
        if replace_fields:
            return OperationKind.REPLACE, diff, f"changes to {', '.join(replace_fields)} require replacement"
        return OperationKind.UPDATE, diff, f"update {', '.join(sorted(diff))} in place"

    def _order_deletes(
        self,
        operations: List[Operation],
        prior_state: Mapping[str, StateRecord],
        delete_key: Dict[str, str],
        final_key: Dict[str, str],
    ) -> None:
        """
        A node is deleted only after everything that depended on it at its
        last apply has been deleted (or, if still declared, has been applied).
        """
        waits: Dict[str, Set[str]] = {key: set() for key in delete_key.values()}
        for node_id, record in prior_state.items():
            for dep in record.dependencies:
                target = delete_key.get(dep)
                if target is None:
                    continue
                if node_id in delete_key:
                    waits[target].add(delete_key[node_id])
                elif node_id in final_key and dep not in final_key:
                    # still declared, no longer references `dep`
                    waits[target].add(final_key[node_id])

        for idx, op in enumerate(operations):
            extra = waits.get(op.key)
            if op.kind == OperationKind.DELETE and extra:
                extra = extra - {op.key}
                operations[idx] = _with_deps(op, op.depends_on | frozenset(extra))

    def _log_plan_summary(self, plan: Plan) -> None:
        summary = plan.summary()
        logger.info(
            f"Plan for stack {plan.stack!r}: "
            + ", ".join(f"{count} {name}" for name, count in summary.items() if count)
        )
        for op in plan.operations:
            if op.is_change:
                logger.info(f"  {op.kind.value:>7} {op.node_id} ({op.resource_kind}): {op.reason}")
            else:
                logger.debug(f"  {op.kind.value:>7} {op.node_id} ({op.resource_kind})")

    def analyze_parallelism(self, plan: Plan) -> Dict[str, Any]:
        """
        Analyze parallelism opportunities in the plan.

        Returns:
            Dict with analysis results including:
            - total_operations: Number of operations
            - levels: Number of execution levels
            - max_parallel: Largest number of operations that can run at once
            - bottlenecks: Nodes whose operation 3+ others wait on
        """
        level_of: Dict[str, int] = {}
        levels: List[List[str]] = []
        for op in plan.operations:
            level = max((level_of[d] for d in op.depends_on), default=-1) + 1
            level_of[op.key] = level
            while len(levels) <= level:
                levels.append([])
            levels[level].append(op.key)

        waiting_on: Dict[str, int] = {op.key: 0 for op in plan.operations}
        for op in plan.operations:
            for dep in op.depends_on:
                waiting_on[dep] += 1

        return {
            "total_operations": len(plan.operations),
            "levels": len(levels),
            "max_parallel": max((len(level) for level in levels), default=0),
            "bottlenecks": [key for key, count in waiting_on.items() if count >= 3],
        }


def field_diff(old: Mapping[str, Any], new: Mapping[str, Any]) -> Dict[str, Tuple[Any, Any]]:
    """Fields whose normalized values differ; Unknown new values always differ."""
    diff: Dict[str, Tuple[Any, Any]] = {}
    for name in list(old) + [k for k in new if k not in old]:
        before = old.get(name)
        after = new.get(name)
        if contains_unknown(after) or normalize(before) != normalize(after):
            diff[name] = (before, after)
    return diff


def _with_deps(op: Operation, deps: FrozenSet[str]) -> Operation:
    return Operation(
        key=op.key,
        node_id=op.node_id,
        kind=op.kind,
        resource_kind=op.resource_kind,
        diff=op.diff,
        depends_on=deps,
        node=op.node,
        prior=op.prior,
        replace=op.replace,
        reason=op.reason,
    )


def _sort_operations(operations: List[Operation]) -> List[Operation]:
    """Topological order over operation dependencies, insertion order on ties."""
    index = {op.key: idx for idx, op in enumerate(operations)}
    in_degree = {op.key: 0 for op in operations}
    dependents: Dict[str, List[str]] = {op.key: [] for op in operations}
    for op in operations:
        for dep in op.depends_on:
            if dep not in index:
                raise PlanError(op.node_id, f"operation {op.key!r} waits on unknown operation {dep!r}")
            in_degree[op.key] += 1
            dependents[dep].append(op.key)

    ready = [(index[key], key) for key, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)
    by_key = {op.key: op for op in operations}
    result: List[Operation] = []
    while ready:
        _, key = heapq.heappop(ready)
        result.append(by_key[key])
        for child in dependents[key]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, (index[child], child))

    if len(result) != len(operations):
        stuck = sorted(key for key, deg in in_degree.items() if deg > 0)
        raise PlanError(stuck[0].split(":", 1)[1], f"operations wait on each other: {stuck}")
    return result
