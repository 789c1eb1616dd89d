"""Out-of-band snapshot writer.

The session path never awaits the database.  It hands snapshots to this
queue, which runs at most one ``asyncio.Task`` per call, writes the newest
pending snapshot, and retries failed writes with exponential backoff.  A
newer snapshot supersedes an older one that has not been written yet, so
writes for one call always land in the order they were produced.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from callscribe import constants
from callscribe.db import PersistencePort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Write:
    kind: str  # "save" | "failed"
    snapshot: dict[str, Any]
    reason: str = ""


class SnapshotQueue:
    """Per-call write-behind queue in front of a ``PersistencePort``."""

    def __init__(
        self,
        store: PersistencePort,
        *,
        max_retries: int = constants.PERSIST_MAX_RETRIES,
        backoff_base: float = constants.PERSIST_BACKOFF_BASE,
    ) -> None:
        self._store = store
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._pending: dict[str, _Write] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._failure_count: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit_save(self, call_id: str, snapshot: dict[str, Any]) -> None:
        self._submit(call_id, _Write("save", snapshot))

    def submit_failure(self, call_id: str, reason: str, snapshot: dict[str, Any]) -> None:
        self._submit(call_id, _Write("failed", snapshot, reason))

    def active_count(self) -> int:
        """Return the number of calls with a write in progress."""
        return len(self._tasks)

    @property
    def failure_count(self) -> int:
        """Writes abandoned after exhausting every retry."""
        return self._failure_count

    async def wait_idle(self, call_id: str) -> None:
        """Wait until every write submitted for *call_id* has been attempted."""
        task = self._tasks.get(call_id)
        while task is not None:
            await asyncio.wait({task})
            task = self._tasks.get(call_id)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.wait(list(self._tasks.values()))

    def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        if self._pending:
            logger.warning("[Persist] Discarding %d unwritten snapshot(s) on shutdown.", len(self._pending))
        self._pending.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _submit(self, call_id: str, write: _Write) -> None:
        queued = self._pending.get(call_id)
        if queued is not None and queued.kind == "failed" and write.kind == "save":
            logger.debug("[Persist] Ignoring save for %s queued behind its failure record.", call_id)
            return
        self._pending[call_id] = write
        if call_id not in self._tasks:
            self._tasks[call_id] = asyncio.create_task(self._run(call_id))

    async def _run(self, call_id: str) -> None:
        try:
            while call_id in self._pending:
                write = self._pending.pop(call_id)
                await self._write_with_retry(call_id, write)
        finally:
            self._tasks.pop(call_id, None)

    async def _write_with_retry(self, call_id: str, write: _Write) -> None:
        for attempt in range(self._max_retries + 1):
            try:
                if write.kind == "failed":
                    await self._store.mark_failed(call_id, write.reason, write.snapshot)
                else:
                    await self._store.save(call_id, write.snapshot)
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "[Persist] %s write for %s failed (attempt %d/%d): %s",
                    write.kind, call_id, attempt + 1, self._max_retries + 1, exc,
                )

            if write.kind == "save" and call_id in self._pending:
                logger.debug("[Persist] Newer snapshot queued for %s — dropping stale retry.", call_id)
                return
            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff_base * (2 ** attempt))

        self._failure_count += 1
        logger.error("[Persist] Giving up on %s write for %s after %d attempts.", write.kind, call_id, self._max_retries + 1)
