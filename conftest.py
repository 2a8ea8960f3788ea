"""Shared fixtures for the resgraph test suite."""
import pytest

from resgraph import InMemoryProvider, Stack, Reference, default_registry


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def registry(provider):
    return default_registry(memory_provider=provider)


@pytest.fixture
def network_stack():
    """net <- fw <- vm, with vm also ordered after fw."""
    stack = Stack("network")
    stack.add("net", "memory.Network", {"cidr": "10.0.0.0/16"})
    stack.add("fw", "memory.Firewall", {"network": Reference("net", "id"), "ports": [22, 443]})
    stack.add("vm", "memory.Instance", {"network": Reference("net", "id")}, depends_on=["fw"])
    stack.export("vm_link", Reference("vm", "self_link"))
    return stack
