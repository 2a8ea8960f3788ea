"""
State records and the StateStore contract.

The store is the durable record of what was last applied. It is read once at
the start of planning and written one record at a time during execution, so
a crash mid-run keeps the progress made so far.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
import logging
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateRecord(BaseModel):
    """
    What is known about one applied resource.

    `inputs` keeps the resolved inputs of the last apply so the planner can
    tell which fields changed; `inputs_hash` is the quick equality check.
    """
    node_id: str
    kind: str
    inputs_hash: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    provider_id: str
    dependencies: List[str] = Field(default_factory=list)
    protect: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _sorted_dependencies(cls, v):
        if v is None:
            return []
        return sorted(v)


@runtime_checkable
class StateStore(Protocol):
    """
    Durable per-node state.

    `commit` and `remove` are atomic per record; no cross-record transaction
    is required. `load` on a missing or unreadable store returns {}.
    """

    async def load(self) -> Dict[str, StateRecord]: ...

    async def commit(self, node_id: str, record: StateRecord) -> None: ...

    async def remove(self, node_id: str) -> None: ...


class MemoryStateStore:
    """Non-durable store, used for tests and dry runs."""

    def __init__(self, records: Optional[Dict[str, StateRecord]] = None):
        self._records: Dict[str, StateRecord] = dict(records or {})
        self.commits: List[str] = []

    async def load(self) -> Dict[str, StateRecord]:
        return {k: v.model_copy(deep=True) for k, v in self._records.items()}

    async def commit(self, node_id: str, record: StateRecord) -> None:
        self._records[node_id] = record.model_copy(deep=True)
        self.commits.append(node_id)
        logger.debug(f"[STATE] committed {node_id!r} (memory)")

    async def remove(self, node_id: str) -> None:
        self._records.pop(node_id, None)
        logger.debug(f"[STATE] removed {node_id!r} (memory)")

    def snapshot(self) -> Dict[str, StateRecord]:
        return dict(self._records)
