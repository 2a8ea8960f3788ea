# src/resgraph/providers/factory.py

from typing import Optional
from ..kinds import FieldPolicy, KindRegistry
from .command import COMMAND_KIND, LocalCommandProvider
from .memory import InMemoryProvider


def default_registry(
    memory_provider: Optional[InMemoryProvider] = None,
    command_provider: Optional[LocalCommandProvider] = None,
) -> KindRegistry:
    """
    Registry with the built-in kinds.

    memory.*        simulated cloud; labels, tags, description and display_name update
                    in place, any other change replaces
    command.Local   local shell command; command changes re-run in place, "dir" replaces
    """
    registry = KindRegistry()
    registry.register_family(
        "memory",
        memory_provider or InMemoryProvider(),
        updatable=frozenset({"labels", "description", "display_name", "tags"}),
        default_policy=FieldPolicy.REPLACE,
        retryable=True,
    )
    registry.register_kind(
        COMMAND_KIND,
        command_provider or LocalCommandProvider(),
        updatable={"create", "update", "delete", "environment"},
        replace_on={"dir"},
        default_policy=FieldPolicy.UPDATE,
        description="Run a local shell command",
    )
    return registry
