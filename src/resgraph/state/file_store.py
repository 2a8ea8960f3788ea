"""
JSON-file state store.

The whole state lives in one JSON document. Each commit rewrites it through a
temporary file and os.replace, so readers only ever see a complete document.
"""
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional, Union
import asyncio
import json
import logging
import os
import tempfile
from pydantic import ValidationError
from ..concurrency.executors import run_blocking
from ..errors import StateStoreError
from .base import StateRecord

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class FileStateStore:
    def __init__(self, path: Union[str, Path], stack: str = "default"):
        self.path = Path(path)
        self.stack = stack
        self._records: Optional[Dict[str, StateRecord]] = None
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        # created lazily so the store can be built outside a running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def load(self) -> Dict[str, StateRecord]:
        records = await run_blocking(self._read)
        self._records = records
        return {k: v.model_copy(deep=True) for k, v in records.items()}

    async def commit(self, node_id: str, record: StateRecord) -> None:
        async with self._get_lock():
            if self._records is None:
                self._records = await run_blocking(self._read)
            records = dict(self._records)
            records[node_id] = record.model_copy(deep=True)
            # the cache only moves once the document is on disk
            await run_blocking(self._write, records)
            self._records = records
        logger.debug(f"[STATE] committed {node_id!r} to {self.path}")

    async def remove(self, node_id: str) -> None:
        async with self._get_lock():
            if self._records is None:
                self._records = await run_blocking(self._read)
            if node_id not in self._records:
                return
            records = {k: v for k, v in self._records.items() if k != node_id}
            await run_blocking(self._write, records)
            self._records = records
        logger.debug(f"[STATE] removed {node_id!r} from {self.path}")

    def _read(self) -> Dict[str, StateRecord]:
        if not self.path.exists():
            logger.info(f"No state at {self.path}; starting from empty state")
            return {}
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
            resources = document.get("resources", {})
            return {
                node_id: StateRecord.model_validate(raw)
                for node_id, raw in resources.items()
            }
        except (OSError, ValueError, AttributeError, ValidationError) as e:
            logger.warning(f"State at {self.path} is unreadable ({e}); assuming empty state")
            return {}

    def _write(self, records: Dict[str, StateRecord]) -> None:
        document: Dict[str, Any] = {
            "version": STATE_FORMAT_VERSION,
            "stack": self.stack,
            "resources": {
                node_id: record.model_dump(mode="json")
                for node_id, record in sorted(records.items())
            },
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(document, fh, indent=2, sort_keys=True)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state to {self.path}: {e}") from e
