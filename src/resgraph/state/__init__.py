"""
State Store: durable record of the last-applied desired state.

Backends:
- MemoryStateStore: in-process, for tests and dry runs
- FileStateStore: one JSON document, atomic rewrite per commit
- MongoStateStore: one MongoDB document per resource (requires motor)
"""
from .base import MemoryStateStore, StateRecord, StateStore
from .file_store import FileStateStore
from .mongodb import MongoStateConfig, MongoStateStore, open_mongo_store

__all__ = [
    "StateRecord",
    "StateStore",
    "MemoryStateStore",
    "FileStateStore",
    "MongoStateConfig",
    "MongoStateStore",
    "open_mongo_store",
]
