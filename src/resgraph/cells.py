"""
Write-once output cells shared by concurrently running operations.

Each node has one cell. The operation that applies the node publishes its
outputs exactly once; afterwards the cell is read-only, so readers need no
locking beyond waiting for the publish.
"""
from __future__ import annotations
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
import asyncio
import logging
from .values import Reference

logger = logging.getLogger(__name__)


class CellNotReady(LookupError):
    """A reference was read before its producer published."""
    pass


class OutputCell:
    def __init__(self, node_id: str):
        self.node_id = node_id
        self._event = asyncio.Event()
        self._outputs: Optional[Mapping[str, Any]] = None
        self._error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    @property
    def failed(self) -> bool:
        return self._error is not None

    def publish(self, outputs: Mapping[str, Any]) -> None:
        if self._event.is_set():
            raise RuntimeError(f"Outputs of {self.node_id!r} already published")
        self._outputs = MappingProxyType(dict(outputs))
        self._event.set()
        logger.debug(f"[CACHE] published {self.node_id!r}: {sorted(self._outputs)}")

    def fail(self, reason: str) -> None:
        """Close the cell without a value; readers get CellNotReady."""
        if self._event.is_set():
            return
        self._error = reason
        self._event.set()

    async def wait(self) -> Mapping[str, Any]:
        await self._event.wait()
        return self.value()

    def value(self) -> Mapping[str, Any]:
        if not self._event.is_set():
            raise CellNotReady(f"Outputs of {self.node_id!r} are not published yet")
        if self._error is not None:
            raise CellNotReady(f"{self.node_id!r} produced no outputs: {self._error}")
        return self._outputs


class OutputCache:
    """Per-run cache of resolved outputs; discarded (or exported) after the run."""

    def __init__(self):
        self._cells: Dict[str, OutputCell] = {}

    def cell(self, node_id: str) -> OutputCell:
        cell = self._cells.get(node_id)
        if cell is None:
            cell = self._cells[node_id] = OutputCell(node_id)
        return cell

    def publish(self, node_id: str, outputs: Mapping[str, Any]) -> None:
        self.cell(node_id).publish(outputs)

    def fail(self, node_id: str, reason: str) -> None:
        self.cell(node_id).fail(reason)

    def lookup(self, ref: Reference) -> Any:
        outputs = self.cell(ref.node_id).value()
        if ref.output not in outputs:
            raise CellNotReady(f"{ref.node_id!r} has no output {ref.output!r}")
        return outputs[ref.output]

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            node_id: dict(cell.value())
            for node_id, cell in self._cells.items()
            if cell.done and not cell.failed
        }
