"""
Drift detection.

Reads every recorded resource through its provider before planning and
brings the state store in line with what actually exists:
- a resource the provider no longer knows is dropped from state (it will be
  planned as a Create)
- changed outputs are written back, so dependents plan against real values
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import asyncio
import logging
from .concurrency.executors import accepts_kwarg, call_maybe_async
from .errors import NotFoundError, ProviderError
from .kinds import KindRegistry
from .state.base import StateRecord, StateStore
from .values import normalize

logger = logging.getLogger(__name__)


@dataclass
class RefreshReport:
    records: Dict[str, StateRecord] = field(default_factory=dict)
    drifted: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def has_drift(self) -> bool:
        return bool(self.drifted or self.missing)


async def refresh_state(
    store: StateStore,
    registry: KindRegistry,
    records: Optional[Dict[str, StateRecord]] = None,
    concurrency: int = 8,
) -> RefreshReport:
    """Read every recorded resource and reconcile the store; returns the refreshed records."""
    if records is None:
        records = await store.load()
    report = RefreshReport(records=dict(records))
    semaphore = asyncio.Semaphore(concurrency)

    async def _refresh_one(node_id: str, record: StateRecord) -> None:
        try:
            spec = registry.get(record.kind)
        except KeyError:
            report.errors[node_id] = f"no provider registered for kind {record.kind!r}"
            logger.warning(f"Cannot refresh {node_id!r}: unknown kind {record.kind!r}")
            return

        read = spec.provider.read
        kwargs = {"prior": record} if accepts_kwarg(read, "prior") else {}
        async with semaphore:
            try:
                outputs = await call_maybe_async(read, record.provider_id, **kwargs)
            except NotFoundError:
                logger.warning(f"Drift: {node_id!r} ({record.provider_id}) no longer exists")
                await store.remove(node_id)
                report.records.pop(node_id, None)
                report.missing.append(node_id)
                return
            except ProviderError as e:
                report.errors[node_id] = str(e)
                logger.warning(f"Cannot refresh {node_id!r}: {e}")
                return
            except Exception as e:
                error = ProviderError(f"{type(e).__name__}: {e}", node_id, "read")
                report.errors[node_id] = str(error)
                logger.warning(f"Cannot refresh {node_id!r}: {error}")
                return

        current = normalize(dict(outputs or {}))
        if current != record.outputs:
            changed = sorted(
                k for k in set(current) | set(record.outputs)
                if current.get(k) != record.outputs.get(k)
            )
            logger.warning(f"Drift: {node_id!r} outputs changed: {changed}")
            updated = record.model_copy(update={"outputs": current})
            await store.commit(node_id, updated)
            report.records[node_id] = updated
            report.drifted.append(node_id)

    await asyncio.gather(*(_refresh_one(nid, rec) for nid, rec in records.items()))
    report.drifted.sort()
    report.missing.sort()
    logger.info(
        f"Refreshed {len(records)} resources: {len(report.drifted)} drifted, "
        f"{len(report.missing)} missing, {len(report.errors)} unreadable"
    )
    return report
