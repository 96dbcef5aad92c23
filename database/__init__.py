"""
Database layer — record store backends.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (single JSON snapshot on disk, for small deployments)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  customer = await store.get_customer("ana@example.com")
"""
from database.store_base import BaseRecordStore
from database.store_memory import InMemoryRecordStore
from database.store_file import FileRecordStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # Store interface
    "BaseRecordStore",
    # Store backends
    "InMemoryRecordStore", "FileRecordStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
