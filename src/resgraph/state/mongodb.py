"""
MongoDB state store using Motor for non-blocking I/O.

One document per resource, keyed by node id, in a collection named after the
stack. Each commit is a single upsert, which MongoDB applies atomically.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
import os
from pydantic import ValidationError
from ..errors import StateStoreError
from .base import StateRecord

logger = logging.getLogger(__name__)


@dataclass
class MongoStateConfig:
    uri: str = os.getenv("RESGRAPH_MONGO_URI", "mongodb://localhost:27017")
    db_name: str = os.getenv("RESGRAPH_MONGO_DB", "resgraph")
    collection_prefix: str = "state_"


class MongoStateStore:
    """
    Example:
        ```python
        store = MongoStateStore(MongoStateConfig(uri="mongodb://localhost:27017"), stack="analytics")
        records = await store.load()
        ```
    """

    def __init__(self, config: MongoStateConfig, stack: str = "default", client: Any = None):
        if client is None:
            try:
                from motor.motor_asyncio import AsyncIOMotorClient
            except ImportError:
                raise ImportError(
                    "MongoStateStore requires motor. "
                    "Install with: pip install 'resgraph[mongodb]'"
                )
            client = AsyncIOMotorClient(
                config.uri,
                maxPoolSize=20,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                retryWrites=True,
                retryReads=True,
                appname="resgraph-state",
            )
        self.config = config
        self.stack = stack
        self.client = client
        self.collection = client[config.db_name][f"{config.collection_prefix}{stack}"]
        logger.info(f"MongoStateStore using {config.db_name}.{config.collection_prefix}{stack}")

    async def load(self) -> Dict[str, StateRecord]:
        records: Dict[str, StateRecord] = {}
        async for doc in self.collection.find({}):
            doc = dict(doc)
            node_id = doc.pop("_id")
            try:
                records[node_id] = StateRecord.model_validate({"node_id": node_id, **doc})
            except ValidationError as e:
                logger.warning(f"[STATE] ignoring unreadable record {node_id!r}: {e}")
        return records

    async def commit(self, node_id: str, record: StateRecord) -> None:
        doc = record.model_dump(mode="json")
        doc.pop("node_id", None)
        try:
            await self.collection.replace_one({"_id": node_id}, doc, upsert=True)
        except Exception as e:
            raise StateStoreError(f"Failed to commit {node_id!r}: {e}") from e
        logger.debug(f"[STATE] committed {node_id!r} (mongodb)")

    async def remove(self, node_id: str) -> None:
        try:
            await self.collection.delete_one({"_id": node_id})
        except Exception as e:
            raise StateStoreError(f"Failed to remove {node_id!r}: {e}") from e
        logger.debug(f"[STATE] removed {node_id!r} (mongodb)")

    def close(self) -> None:
        self.client.close()
        logger.info("MongoStateStore connections closed")


def open_mongo_store(stack: str, uri: Optional[str] = None, db_name: Optional[str] = None) -> MongoStateStore:
    config = MongoStateConfig()
    if uri:
        config.uri = uri
    if db_name:
        config.db_name = db_name
    return MongoStateStore(config, stack=stack)
