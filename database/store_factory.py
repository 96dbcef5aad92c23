"""
Store Factory — Create the right record store backend from configuration.

Configuration in settings.yaml:
    database:
      # Record store backend — where runtime state lives
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — One JSON snapshot on disk (single-process deployments)
      store_backend: "file"

      # For file backend: snapshot path and flush interval
      store_file_path: "./data/snapshot.json"
      snapshot_interval_seconds: 60

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from config dict
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.addressing import DEFAULT_COUNTRY_CODE
from database.store_base import BaseRecordStore

logger = structlog.get_logger()

_instance: Optional[BaseRecordStore] = None


def create_store(config: dict = None, country_code: str = DEFAULT_COUNTRY_CODE) -> BaseRecordStore:
    """
    Factory: create the appropriate record store backend.

    Args:
        config: dict with keys:
            store_backend: "memory" | "file"  (default: "memory")
            store_file_path: str (for file backend, default: "./data/snapshot.json")
            snapshot_interval_seconds: float (for file backend, default: 60)
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileRecordStore
        path = config.get("store_file_path", "./data/snapshot.json")
        _instance = FileRecordStore(
            path=path,
            flush_interval_s=config.get("snapshot_interval_seconds", 60.0),
            country_code=country_code,
        )
        logger.info("store_created", backend="file", path=path)

    else:  # "memory" or default
        from database.store_memory import InMemoryRecordStore
        _instance = InMemoryRecordStore(country_code=country_code)
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseRecordStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
