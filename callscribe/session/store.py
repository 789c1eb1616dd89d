"""In-memory table of live transcription sessions.

Owned by the service root and injected into ``SessionManager``; two
managers never share a store.  Entries are added when a call starts and
removed when a terminal session is evicted.  All access happens on the
event loop thread, so a plain dict is sufficient.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from callscribe.models import TranscriptionSession

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, TranscriptionSession] = {}

    def create(self, call_id: str, metadata: dict[str, Any] | None = None) -> TranscriptionSession:
        if call_id in self._sessions:
            raise KeyError(f"session {call_id} already exists")
        session = TranscriptionSession(call_id=call_id, metadata=dict(metadata or {}))
        self._sessions[call_id] = session
        logger.debug("[Store] Session %s created (%d live).", call_id, len(self._sessions))
        return session

    def get(self, call_id: str) -> TranscriptionSession | None:
        return self._sessions.get(call_id)

    def remove(self, call_id: str) -> TranscriptionSession | None:
        session = self._sessions.pop(call_id, None)
        if session is not None:
            logger.debug("[Store] Session %s evicted (%d live).", call_id, len(self._sessions))
        return session

    def active(self) -> list[TranscriptionSession]:
        """Sessions that have not reached a terminal state."""
        return [s for s in self._sessions.values() if not s.state.is_terminal]

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[TranscriptionSession]:
        return iter(list(self._sessions.values()))
