"""Durable storage for call transcription records.

One row per call in ``call_transcriptions``, keyed by ``call_sid``.  Every
write is an upsert on that key, so replaying a snapshot (retries, duplicate
saves) is harmless.

The supabase-py SDK is synchronous, so all I/O is wrapped in
``asyncio.to_thread``.  Stores raise ``PersistenceError``; the caller
(``SnapshotQueue``) owns retrying and logging, and a database failure never
reaches the audio path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from callscribe import constants
from callscribe.config import Settings
from callscribe.errors import PersistenceError
from callscribe.utils import isoformat, utcnow

if TYPE_CHECKING:
    from supabase import Client

logger = logging.getLogger(__name__)


class PersistencePort(Protocol):
    async def save(self, call_id: str, snapshot: dict[str, Any]) -> None: ...

    async def mark_failed(
        self, call_id: str, reason: str, snapshot: dict[str, Any] | None = None
    ) -> None: ...

    async def fetch(self, call_id: str) -> dict[str, Any] | None: ...


def snapshot_to_row(call_id: str, snapshot: dict[str, Any]) -> dict[str, Any]:
    """Map a session snapshot onto the ``call_transcriptions`` columns."""
    return {
        "call_sid": call_id,
        "status": snapshot.get("status", "pending"),
        "transcription": snapshot.get("transcription", ""),
        "partial_transcriptions": snapshot.get("segments", []),
        "metadata": snapshot.get("metadata", {}),
        "started_at": snapshot.get("started_at"),
        "ended_at": snapshot.get("ended_at"),
        "duration_seconds": snapshot.get("duration_seconds"),
        "degraded": snapshot.get("degraded", False),
        "error_count": snapshot.get("error_count", 0),
        "error_message": snapshot.get("failure_reason"),
        "updated_at": isoformat(utcnow()),
    }


class InMemoryTranscriptStore:
    """Dict-backed store used when Supabase is not configured (and in tests)."""

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.saves: list[tuple[str, dict[str, Any]]] = []
        self.failures: list[tuple[str, str]] = []

    async def save(self, call_id: str, snapshot: dict[str, Any]) -> None:
        self.saves.append((call_id, snapshot))
        self.rows[call_id] = snapshot_to_row(call_id, snapshot)

    async def mark_failed(
        self, call_id: str, reason: str, snapshot: dict[str, Any] | None = None
    ) -> None:
        self.failures.append((call_id, reason))
        row = self.rows.get(call_id, {"call_sid": call_id})
        if snapshot is not None:
            row = snapshot_to_row(call_id, snapshot)
        row["status"] = "failed"
        row["error_message"] = reason
        self.rows[call_id] = row

    async def fetch(self, call_id: str) -> dict[str, Any] | None:
        row = self.rows.get(call_id)
        return dict(row) if row is not None else None


class SupabaseTranscriptStore:
    """``call_transcriptions`` table accessed with the service-role key."""

    def __init__(self, client: "Client", *, table: str = constants.TRANSCRIPTIONS_TABLE) -> None:
        self._client = client
        self._table = table

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseTranscriptStore":
        from supabase import create_client

        client = create_client(settings.supabase_url, settings.supabase_key)
        logger.info("[Store] Supabase client initialised (%s).", settings.supabase_url)
        return cls(client)

    async def save(self, call_id: str, snapshot: dict[str, Any]) -> None:
        await self._upsert(call_id, snapshot_to_row(call_id, snapshot))

    async def mark_failed(
        self, call_id: str, reason: str, snapshot: dict[str, Any] | None = None
    ) -> None:
        row = snapshot_to_row(call_id, snapshot) if snapshot is not None else {"call_sid": call_id}
        row["status"] = "failed"
        row["error_message"] = reason[: constants.MAX_ERROR_MESSAGE_CHARS]
        row["ended_at"] = row.get("ended_at") or isoformat(utcnow())
        await self._upsert(call_id, row)

    async def fetch(self, call_id: str) -> dict[str, Any] | None:
        def _select() -> list[dict[str, Any]]:
            response = (
                self._client.table(self._table)
                .select("*")
                .eq("call_sid", call_id)
                .limit(1)
                .execute()
            )
            return response.data or []

        try:
            rows = await asyncio.to_thread(_select)
        except Exception as exc:
            raise PersistenceError(f"failed to read {call_id}: {exc}", call_id=call_id) from exc
        return rows[0] if rows else None

    async def _upsert(self, call_id: str, row: dict[str, Any]) -> None:
        def _write() -> None:
            self._client.table(self._table).upsert(row, on_conflict="call_sid").execute()

        try:
            await asyncio.to_thread(_write)
        except Exception as exc:
            raise PersistenceError(f"failed to upsert {call_id}: {exc}", call_id=call_id) from exc
        logger.debug("[Store] %s → %s", call_id, row.get("status"))


def build_store(settings: Settings) -> PersistencePort:
    """Supabase when configured, otherwise an in-process store."""
    if not settings.supabase_enabled:
        logger.warning("[Store] SUPABASE_URL or SUPABASE_SERVICE_KEY not set — transcripts kept in memory only.")
        return InMemoryTranscriptStore()
    try:
        return SupabaseTranscriptStore.from_settings(settings)
    except Exception as exc:
        logger.warning("[Store] Failed to initialise Supabase client: %s — using memory store.", exc)
        return InMemoryTranscriptStore()
