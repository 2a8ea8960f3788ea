# src/resgraph/providers/base.py
from __future__ import annotations
from typing import Any, Dict, Mapping, Protocol, Tuple, runtime_checkable
from ..errors import NotFoundError, ProviderError

Diff = Mapping[str, Tuple[Any, Any]]


@runtime_checkable
class Provider(Protocol):
    """
    Adapter between the engine and one external API.

    Methods may be plain functions (run on the shared I/O pool) or coroutine
    functions. The engine may invoke any method more than once for the same
    logical change, so implementations must be idempotent.

    A method that declares a `prior` keyword parameter also receives the
    StateRecord of the last successful apply.
    """

    def create(self, kind: str, inputs: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create the resource; return (provider_id, outputs)."""
        ...

    def update(self, provider_id: str, diff: Diff) -> Dict[str, Any]:
        """Apply `diff` (field -> (old, new)) in place; return the new outputs."""
        ...

    def delete(self, provider_id: str) -> None:
        """Destroy the resource. May raise NotFoundError if it is already gone."""
        ...

    def read(self, provider_id: str) -> Dict[str, Any]:
        """Return current outputs, or raise NotFoundError."""
        ...


__all__ = ["Diff", "NotFoundError", "Provider", "ProviderError"]
