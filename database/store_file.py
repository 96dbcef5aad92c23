"""
FileRecordStore — JSON snapshot-backed store with persistence across restarts.

Data layout:
  {store_file_path}        one JSON blob:
    {
      "customers":         {email: customer},
      "orders":            {order_id: order},
      "conversations":     {address: conversation},
      "pending_followups": {order_id: follow-up},
      "saved_at":          ISO timestamp,
    }

Features:
  - Survives process restarts (unlike InMemoryRecordStore)
  - Snapshot taken under the store lock, so no half-written entity is saved
  - Written to a temp file and renamed into place (atomic on POSIX)
  - Flushed on a fixed interval and on close()
  - Missing or corrupt blob on startup → start empty, log a warning

Best for: single-process deployments, demos.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from channels.addressing import DEFAULT_COUNTRY_CODE
from database.store_memory import InMemoryRecordStore

logger = structlog.get_logger()


class FileRecordStore(InMemoryRecordStore):
    """
    Extends InMemoryRecordStore with single-blob JSON persistence.

    On start(): loads the blob into memory and starts the periodic flush.
    On close(): stops the periodic flush and writes a final snapshot.
    """

    def __init__(
        self,
        path: str = "./data/snapshot.json",
        flush_interval_s: float = 60.0,
        country_code: str = DEFAULT_COUNTRY_CODE,
    ):
        super().__init__(country_code=country_code)
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()           # one writer on the .tmp path at a time
        logger.info("file_store_initialized", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    # ── Load / Save ───────────────────────────────────────

    def _read_blob(self) -> Optional[dict[str, Any]]:
        if not self._path.exists():
            logger.info("file_store_no_snapshot", path=str(self._path))
            return None
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("file_store_load_error", path=str(self._path), error=str(e))
            return None
        if not isinstance(data, dict):
            logger.warning("file_store_load_error", path=str(self._path),
                           error="snapshot is not a JSON object")
            return None
        return data

    def _write_blob(self, data: dict[str, Any]) -> None:
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(self._path)

    async def load(self) -> None:
        """Restore state from disk. A missing or corrupt blob leaves the store empty."""
        data = await asyncio.to_thread(self._read_blob)
        if data is not None:
            await self.restore(data)

    async def flush(self) -> None:
        """Write a consistent snapshot of every map to disk."""
        async with self._flush_lock:
            data = await self.snapshot()
            await asyncio.to_thread(self._write_blob, data)
        logger.debug("file_store_flushed", path=str(self._path))

    async def _periodic_flush(self):
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                # A cancelled loop leaves an in-flight write running to completion
                await asyncio.shield(self.flush())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("file_store_flush_error", error=str(e))

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        await self.load()
        if self._flush_interval > 0 and (self._flush_task is None or self._flush_task.done()):
            self._flush_task = asyncio.create_task(self._periodic_flush())

    async def close(self) -> None:
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()
        logger.info("file_store_flushed_all", path=str(self._path))
