"""ChunkAccumulator — batches decoded PCM into fixed-duration STT windows.

Sending every 20 ms telephony frame to an STT provider would be slow and
expensive; sending the whole call at the end would make the transcript
useless while the call is live.  The accumulator releases one chunk per
``window_ms`` of audio (5 s by default) and stamps each with a per-session
sequence number, which is the only ordering key the merge relies on.

Not thread-safe: callers serialise access per session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from callscribe import constants
from callscribe.models import AudioChunk, PCM16Buffer

logger = logging.getLogger(__name__)


@dataclass
class _SessionBuffer:
    pcm: bytearray = field(default_factory=bytearray)
    next_sequence: int = 0


class ChunkAccumulator:
    def __init__(
        self,
        *,
        window_ms: int = constants.CHUNK_WINDOW_MS,
        sample_rate: int = constants.TELEPHONY_SAMPLE_RATE,
    ) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self._window_ms = window_ms
        self._sample_rate = sample_rate
        self._bytes_per_ms = sample_rate * constants.PCM_SAMPLE_WIDTH / 1000.0
        self._window_bytes = int(window_ms * self._bytes_per_ms)
        self._buffers: dict[str, _SessionBuffer] = {}

    @property
    def window_ms(self) -> int:
        return self._window_ms

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, session_id: str, pcm: PCM16Buffer | bytes) -> AudioChunk | None:
        """Append *pcm*; return a chunk once a full window is buffered."""
        data = pcm.samples if isinstance(pcm, PCM16Buffer) else pcm
        buf = self._buffers.setdefault(session_id, _SessionBuffer())
        buf.pcm.extend(data)

        if len(buf.pcm) < self._window_bytes:
            return None
        return self._emit(session_id, buf)

    def flush(self, session_id: str) -> AudioChunk | None:
        """Release whatever is buffered (stream end).  None when empty."""
        buf = self._buffers.get(session_id)
        if buf is None or not buf.pcm:
            return None
        return self._emit(session_id, buf)

    def reset(self, session_id: str) -> None:
        """Drop buffered audio and the sequence counter for *session_id*."""
        dropped = self._buffers.pop(session_id, None)
        if dropped is not None and dropped.pcm:
            logger.debug(
                "[Accumulator] Dropped %.0fms of buffered audio for %s",
                len(dropped.pcm) / self._bytes_per_ms,
                session_id,
            )

    def buffered_ms(self, session_id: str) -> float:
        buf = self._buffers.get(session_id)
        if buf is None:
            return 0.0
        return len(buf.pcm) / self._bytes_per_ms

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _emit(self, session_id: str, buf: _SessionBuffer) -> AudioChunk:
        data = bytes(buf.pcm)
        buf.pcm.clear()
        chunk = AudioChunk(
            session_id=session_id,
            sequence=buf.next_sequence,
            pcm_data=data,
            duration_ms=len(data) / self._bytes_per_ms,
            sample_rate=self._sample_rate,
        )
        buf.next_sequence += 1
        return chunk
