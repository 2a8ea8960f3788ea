"""Tests for the built-in providers and the kind registry."""
import pytest

from resgraph import (
    FieldPolicy,
    InMemoryProvider,
    KindRegistry,
    KindSpec,
    LocalCommandProvider,
    NotFoundError,
    ProviderError,
    default_registry,
)


def test_registry_families_and_exact_kinds():
    registry = default_registry()

    network = registry.get("memory.Network")
    assert network.policy_for("labels") == FieldPolicy.UPDATE
    assert network.policy_for("cidr") == FieldPolicy.REPLACE
    assert network.retryable
    assert registry.get("memory.Network") is network

    command = registry.get("command.Local")
    assert command.policy_for("create") == FieldPolicy.UPDATE
    assert command.policy_for("dir") == FieldPolicy.REPLACE

    assert "memory.Anything" in registry
    assert "cloud.Bucket" not in registry
    with pytest.raises(KeyError):
        registry.get("cloud.Bucket")


def test_kind_spec_validation():
    with pytest.raises(ValueError):
        KindSpec("x.Y", provider=None, updatable={"a"}, replace_on={"a"})
    with pytest.raises(ValueError):
        KindSpec("x.Y", provider=None, concurrency_cap=0)

    registry = KindRegistry()
    spec = registry.register_kind("x.Y", None, updatable=["a"], default_policy="update")
    assert spec.default_policy == FieldPolicy.UPDATE
    assert spec.policy_for("anything") == FieldPolicy.UPDATE


def test_memory_provider_contract():
    provider = InMemoryProvider(outputs_for={"memory.Bucket": lambda pid, inputs: {"url": f"mem://{pid}"}})

    pid, outputs = provider.create("memory.Bucket", {"location": "EU"})
    assert pid == "bucket-1"
    assert outputs == {
        "location": "EU",
        "id": "bucket-1",
        "name": "bucket-1",
        "self_link": "memory://memory.Bucket/bucket-1",
        "url": "mem://bucket-1",
    }

    updated = provider.update(pid, {"location": ("EU", "US")})
    assert updated["location"] == "US"
    assert provider.read(pid)["location"] == "US"

    provider.delete(pid)
    with pytest.raises(NotFoundError):
        provider.read(pid)
    with pytest.raises(NotFoundError):
        provider.delete(pid)


def test_memory_provider_failure_injection():
    provider = InMemoryProvider()
    provider.inject_failure("create", match=lambda inputs: inputs.get("size") == 0, times=1)

    with pytest.raises(ProviderError):
        provider.create("memory.Disk", {"size": 0})
    provider.create("memory.Disk", {"size": 0})
    provider.create("memory.Disk", {"size": 1})
    assert len(provider.calls_for("create")) == 3


def test_command_provider_runs_shell_commands(tmp_path):
    provider = LocalCommandProvider()
    marker = tmp_path / "created"

    pid, outputs = provider.create("command.Local", {
        "create": f"echo $GREETING > {marker} && echo done",
        "environment": {"GREETING": "hello"},
    })

    assert pid.startswith("cmd-")
    assert outputs["stdout"] == "done\n"
    assert marker.read_text() == "hello\n"

    with pytest.raises(ProviderError, match="status 7"):
        provider.create("command.Local", {"create": "exit 7"})
    with pytest.raises(ProviderError):
        provider.create("command.Local", {})
    with pytest.raises(NotFoundError):
        provider.read(pid)

