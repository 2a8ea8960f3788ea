"""
Tests for plan execution.

Uses the in-memory provider (sync, runs on the shared thread pool) and a few
small async providers defined here to observe ordering, concurrency,
failure isolation, retries, timeouts and cancellation.
"""
import asyncio

import pytest

from resgraph import (
    Computed,
    Executor,
    InMemoryProvider,
    Interpolate,
    MemoryStateStore,
    NodeStatus,
    OperationKind,
    PartialRunError,
    Planner,
    ProviderError,
    Reference,
    RunContext,
    Stack,
    apply_stack,
    build_graph,
    default_registry,
    preview,
)


class RecordingProvider:
    """Async provider that records what it saw at call time."""

    def __init__(self, delay=0.0, on_create=None):
        self.delay = delay
        self.on_create = on_create
        self.created = []
        self._counter = 0

    async def create(self, kind, inputs):
        if self.on_create is not None:
            self.on_create(kind, inputs)
        await asyncio.sleep(self.delay)
        self._counter += 1
        provider_id = f"rec-{self._counter}"
        self.created.append((kind, dict(inputs)))
        return provider_id, {**inputs, "id": provider_id}

    async def update(self, provider_id, diff):
        return {name: new for name, (_, new) in diff.items()}

    async def delete(self, provider_id):
        return None

    async def read(self, provider_id):
        return {"id": provider_id}


def _run(stack, registry, store, **kwargs):
    return asyncio.run(apply_stack(stack, registry, store, **kwargs))


def test_dependencies_finish_before_dependents_start():
    provider = InMemoryProvider(latency=0.05)
    registry = default_registry(memory_provider=provider)
    stack = Stack()
    stack.add("net", "memory.Network")
    stack.add("fw", "memory.Firewall", {"network": Reference("net")})
    stack.add("vm", "memory.Instance", {"network": Reference("net")}, depends_on=["fw"])

    result = _run(stack, registry, MemoryStateStore())

    assert result.ok
    calls = {call.target: call for call in provider.calls_for("create")}
    assert calls["memory.Network"].finished <= calls["memory.Firewall"].started
    assert calls["memory.Firewall"].finished <= calls["memory.Instance"].started


def test_concurrency_limit_is_respected():
    provider = InMemoryProvider(latency=0.05)
    registry = default_registry(memory_provider=provider)
    stack = Stack()
    for idx in range(10):
        stack.add(f"bucket{idx}", "memory.Bucket", {"index": idx})

    result = _run(stack, registry, MemoryStateStore(), concurrency=3)

    assert len(result.succeeded) == 10
    assert 1 < provider.max_active <= 3


def test_per_kind_concurrency_cap():
    capped = InMemoryProvider(latency=0.03)
    registry = default_registry()
    registry.register_kind("quota.Project", capped, updatable={"labels"}, concurrency_cap=1)
    stack = Stack()
    for idx in range(4):
        stack.add(f"project{idx}", "quota.Project", {"index": idx})

    result = _run(stack, registry, MemoryStateStore(), concurrency=8)

    assert result.ok
    assert capped.max_active == 1


def test_outputs_flow_to_dependents_after_commit():
    store = MemoryStateStore()
    provider = InMemoryProvider(outputs_for={"memory.A": lambda pid, inputs: {"x": "v1"}})
    seen = {}

    def _on_create(kind, inputs):
        seen["commits"] = list(store.commits)

    reader = RecordingProvider(on_create=_on_create)
    registry = default_registry(memory_provider=provider)
    registry.register_kind("test.Reader", reader, updatable={"value"})

    stack = Stack()
    stack.add("a", "memory.A")
    stack.add("b", "test.Reader", {
        "value": Reference("a", "x"),
        "path": Interpolate("/data/{x}/{id}", x=Reference("a", "x"), id=Reference("a")),
    })
    result = _run(stack, registry, store)

    assert result.statuses() == {"a": NodeStatus.CREATED, "b": NodeStatus.CREATED}
    assert seen["commits"] == ["a"]
    assert reader.created == [("test.Reader", {"value": "v1", "path": "/data/v1/a-1"})]
    assert result.outputs["b"]["value"] == "v1"


def test_computed_inputs_see_resolved_references(registry, provider):
    stack = Stack()
    stack.add("net", "memory.Network")
    stack.add("disk", "memory.Disk", {
        "network": Reference("net"),
        "size_gb": 10,
        "size_bytes": Computed(lambda inputs: inputs["size_gb"] * 2 ** 30),
        "label": Computed(lambda inputs: f"disk-on-{inputs['network']}"),
    })
    store = MemoryStateStore()

    result = _run(stack, registry, store)

    outputs = result.outputs["disk"]
    assert outputs["size_bytes"] == 10 * 2 ** 30
    assert outputs["label"] == "disk-on-network-1"

    rerun = _run(stack, registry, store)
    assert set(rerun.statuses().values()) == {NodeStatus.NOOP}


def test_failure_skips_dependents_only(registry, provider):
    provider.inject_failure("create", kind="memory.B", message="quota exceeded")
    stack = Stack()
    stack.add("b", "memory.B")
    stack.add("a", "memory.A", {"b_id": Reference("b")})
    stack.add("c", "memory.C")
    store = MemoryStateStore()

    with pytest.raises(PartialRunError) as excinfo:
        _run(stack, registry, store)

    error = excinfo.value
    assert error.failed == ["b"]
    assert error.skipped == ["a"]
    assert error.succeeded == ["c"]
    assert error.result.exit_code() == 1
    assert "quota exceeded" in error.result.results["b"].reason
    assert isinstance(error.result.results["b"].error, ProviderError)
    assert "b" in error.result.results["a"].reason
    assert not any(call.target == "memory.A" for call in provider.calls)
    assert set(store.snapshot()) == {"c"}


def test_rerun_after_failure_converges(registry, provider):
    provider.inject_failure("create", kind="memory.B", times=1)
    stack = Stack()
    stack.add("b", "memory.B")
    stack.add("a", "memory.A", {"b_id": Reference("b")})
    stack.add("c", "memory.C")
    store = MemoryStateStore()

    first = _run(stack, registry, store, raise_on_failure=False)
    assert not first.ok
    assert first.statuses()["a"] == NodeStatus.SKIPPED

    second = _run(stack, registry, store)
    assert second.statuses() == {
        "b": NodeStatus.CREATED,
        "a": NodeStatus.CREATED,
        "c": NodeStatus.NOOP,
    }


def test_retryable_kinds_are_retried(registry, provider):
    provider.inject_failure("create", kind="memory.Flaky", times=2)
    stack = Stack()
    stack.add("flaky", "memory.Flaky")

    result = _run(stack, registry, MemoryStateStore(), max_retries=2, retry_backoff=0)

    node = result.results["flaky"]
    assert node.status == NodeStatus.CREATED
    assert node.attempts == 3
    assert sum(1 for entry in result.trace if entry["retry"]) == 2


def test_retries_exhausted(registry, provider):
    provider.inject_failure("create", kind="memory.Flaky", times=2)
    stack = Stack()
    stack.add("flaky", "memory.Flaky")

    result = _run(
        stack, registry, MemoryStateStore(),
        max_retries=1, retry_backoff=0, raise_on_failure=False,
    )

    assert result.results["flaky"].status == NodeStatus.FAILED
    assert result.results["flaky"].attempts == 2


def test_provider_call_timeout():
    slow = RecordingProvider(delay=1.0)
    registry = default_registry()
    registry.register_kind("test.Slow", slow, timeout=0.05)
    stack = Stack()
    stack.add("slow", "test.Slow")

    result = _run(stack, registry, MemoryStateStore(), raise_on_failure=False)

    node = result.results["slow"]
    assert node.status == NodeStatus.FAILED
    assert "timed out" in node.reason


def test_cancellation_stops_scheduling_but_commits_in_flight():
    store = MemoryStateStore()

    async def scenario():
        ctx = RunContext(store=store)
        first = RecordingProvider(on_create=lambda kind, inputs: ctx.cancel())
        registry = default_registry()
        registry.register_kind("test.First", first)
        stack = Stack()
        stack.add("first", "test.First")
        stack.add("second", "memory.Second", {"after": Reference("first")})
        return await apply_stack(stack, registry, store, context=ctx, raise_on_failure=False)

    result = asyncio.run(scenario())

    assert result.cancelled
    assert result.statuses() == {"first": NodeStatus.CREATED, "second": NodeStatus.SKIPPED}
    assert result.results["second"].reason == "run cancelled"
    assert set(store.snapshot()) == {"first"}


def test_update_in_place(registry, provider):
    store = MemoryStateStore()
    stack = Stack()
    stack.add("net", "memory.Network", {"cidr": "10.0.0.0/16"})
    first = _run(stack, registry, store)

    stack = Stack()
    stack.add("net", "memory.Network", {"cidr": "10.0.0.0/16", "labels": {"team": "core"}})
    second = _run(stack, registry, store)

    assert second.statuses() == {"net": NodeStatus.UPDATED}
    assert second.results["net"].provider_id == first.results["net"].provider_id
    assert len(provider.calls_for("update")) == 1
    assert store.snapshot()["net"].outputs["labels"] == {"team": "core"}


def test_replace_recreates_downstream(registry, provider, network_stack):
    store = MemoryStateStore()
    first = _run(network_stack, registry, store)
    old_ids = {nid: r.provider_id for nid, r in first.results.items()}

    stack = Stack("network")
    stack.add("net", "memory.Network", {"cidr": "10.8.0.0/16"})
    stack.add("fw", "memory.Firewall", {"network": Reference("net", "id"), "ports": [22, 443]})
    stack.add("vm", "memory.Instance", {"network": Reference("net", "id")}, depends_on=["fw"])
    second = _run(stack, registry, store)

    assert set(second.statuses().values()) == {NodeStatus.CREATED}
    new_ids = {nid: r.provider_id for nid, r in second.results.items()}
    assert not set(old_ids.values()) & set(new_ids.values())
    assert set(provider.resources) == set(new_ids.values())
    assert len(provider.calls_for("delete")) == 3
    assert store.snapshot()["fw"].outputs["network"] == new_ids["net"]


def test_delete_of_vanished_resource_succeeds(registry, provider):
    store = MemoryStateStore()
    stack = Stack()
    stack.add("net", "memory.Network")
    first = _run(stack, registry, store)
    provider.forget(first.results["net"].provider_id)

    result = _run(Stack(), registry, store)

    assert result.statuses() == {"net": NodeStatus.DELETED}
    assert store.snapshot() == {}


def test_exports_are_resolved(registry, network_stack):
    result = _run(network_stack, registry, MemoryStateStore())
    assert result.exports == {"vm_link": "memory://memory.Instance/instance-3"}


def test_executor_rejects_bad_concurrency(registry):
    with pytest.raises(ValueError):
        Executor(registry, MemoryStateStore(), concurrency=0)


def _labelled_stack(env, field="labels"):
    stack = Stack()
    stack.add("net", "memory.Network", {"labels": {"env": env}})
    stack.add("fw", "memory.Firewall", {field: Reference("net", "labels")})
    return stack


def test_in_place_update_reaches_dependents_planned_as_noop(registry, provider):
    store = MemoryStateStore()
    _run(_labelled_stack("dev"), registry, store)

    plan = asyncio.run(preview(_labelled_stack("prod"), registry, store))
    assert plan.actions() == {"net": OperationKind.UPDATE, "fw": OperationKind.NOOP}

    second = _run(_labelled_stack("prod"), registry, store)

    assert second.statuses() == {"net": NodeStatus.UPDATED, "fw": NodeStatus.UPDATED}
    assert second.results["fw"].outputs["labels"] == {"env": "prod"}
    assert store.snapshot()["fw"].inputs["labels"] == {"env": "prod"}
    assert len(provider.calls_for("update")) == 2

    third = asyncio.run(preview(_labelled_stack("prod"), registry, store))
    assert set(third.actions().values()) == {OperationKind.NOOP}


def test_upstream_change_to_a_replace_field_fails_the_dependent(registry, provider):
    store = MemoryStateStore()
    _run(_labelled_stack("dev", field="source"), registry, store)

    second = _run(_labelled_stack("prod", field="source"), registry, store, raise_on_failure=False)

    assert second.statuses() == {"net": NodeStatus.UPDATED, "fw": NodeStatus.FAILED}
    assert "require replacement" in second.results["fw"].reason
    assert store.snapshot()["fw"].inputs["source"] == {"env": "dev"}

    plan = asyncio.run(preview(_labelled_stack("prod", field="source"), registry, store))
    assert plan.action("fw") == OperationKind.REPLACE


def test_concurrent_runs_on_one_executor_keep_their_own_state():
    provider = InMemoryProvider(latency=0.02)
    registry = default_registry()
    registry.register_kind("quota.Project", provider, updatable={"labels"}, concurrency_cap=1)
    executor = Executor(registry, MemoryStateStore())

    def _plan(prefix):
        stack = Stack(prefix)
        stack.add(f"{prefix}_a", "quota.Project")
        stack.add(f"{prefix}_b", "quota.Project")
        return Planner(registry).plan(build_graph(stack.nodes), {}, stack=prefix)

    async def scenario():
        return await asyncio.gather(
            executor.apply(_plan("one"), context=RunContext(store=MemoryStateStore())),
            executor.apply(_plan("two"), context=RunContext(store=MemoryStateStore())),
        )

    one, two = asyncio.run(scenario())

    assert one.ok and two.ok
    assert {entry["node_id"] for entry in one.trace} == {"one_a", "one_b"}
    assert {entry["node_id"] for entry in two.trace} == {"two_a", "two_b"}
    assert provider.max_active <= 2
