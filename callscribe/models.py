"""Data model shared by the transcription pipeline.

``TranscriptionSession`` is the per-call mutable state container.  It is
only ever mutated by ``SessionManager`` while holding that session's lock;
everything else reads it through ``snapshot()``.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from callscribe import constants
from callscribe.utils import isoformat, utcnow


class SessionState(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


class EventType(str, enum.Enum):
    STARTED = "started"
    PARTIAL_UPDATE = "partial_update"
    FINAL_UPDATE = "final_update"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AudioFrame:
    """One inbound telephony frame: base64 mu-law plus routing info."""

    call_id: str
    payload: str | bytes
    sequence_hint: int | None = None
    is_final_frame: bool = False


@dataclass(frozen=True)
class PCM16Buffer:
    """Little-endian signed 16-bit mono PCM."""

    samples: bytes
    sample_rate: int = constants.TELEPHONY_SAMPLE_RATE

    @property
    def sample_count(self) -> int:
        return len(self.samples) // constants.PCM_SAMPLE_WIDTH

    @property
    def duration_ms(self) -> float:
        return self.sample_count * 1000.0 / self.sample_rate

    def __len__(self) -> int:
        return len(self.samples)


@dataclass(frozen=True)
class AudioChunk:
    session_id: str
    sequence: int
    pcm_data: bytes
    duration_ms: float
    sample_rate: int = constants.TELEPHONY_SAMPLE_RATE


@dataclass(frozen=True)
class TranscriptionResult:
    """Outcome of transcribing one chunk.

    ``error`` is set when the provider could not produce text for the chunk;
    such a result is still final so the merge can place an empty segment at
    its sequence and keep going.
    """

    sequence: int
    text: str = ""
    is_final: bool = True
    confidence: float | None = None
    language_code: str | None = None
    duration_ms: float | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def from_error(cls, sequence: int, error: str) -> "TranscriptionResult":
        return cls(sequence=sequence, text="", is_final=True, error=error)


@dataclass
class FinalSegment:
    sequence: int
    text: str
    committed_at: datetime = field(default_factory=utcnow)
    confidence: float | None = None
    sentiment: str = "neutral"
    placeholder: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "text": self.text,
            "committed_at": isoformat(self.committed_at),
            "confidence": self.confidence,
            "sentiment": self.sentiment,
            "placeholder": self.placeholder,
        }


@dataclass
class PartialSegment:
    sequence: int
    text: str
    updated_at: datetime = field(default_factory=utcnow)
    revision: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "text": self.text,
            "updated_at": isoformat(self.updated_at),
            "revision": self.revision,
        }


@dataclass
class TranscriptionSession:
    """All mutable state for one live call."""

    call_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    state: SessionState = SessionState.PENDING
    full_transcript: list[FinalSegment] = field(default_factory=list)
    partial_segments: dict[int, PartialSegment] = field(default_factory=dict)
    held_results: dict[int, TranscriptionResult] = field(default_factory=dict)
    next_expected_sequence: int = 0
    chunks_dispatched: int = 0
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    degraded: bool = False
    error_count: int = 0
    failure_reason: str | None = None
    stream_ended: bool = False
    last_activity: float = 0.0
    last_sequence_hint: int | None = None
    event_counter: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def transcript_text(self) -> str:
        return " ".join(seg.text.strip() for seg in self.full_transcript if seg.text.strip())

    @property
    def in_flight(self) -> int:
        """Chunks dispatched to the STT provider but not yet committed."""
        return self.chunks_dispatched - self.next_expected_sequence

    @property
    def duration_seconds(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds())

    def next_event_id(self) -> int:
        self.event_counter += 1
        return self.event_counter

    def snapshot(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "status": self.state.value,
            "transcription": self.transcript_text,
            "segments": [seg.to_dict() for seg in self.full_transcript],
            "partials": [
                self.partial_segments[seq].to_dict() for seq in sorted(self.partial_segments)
            ],
            "metadata": dict(self.metadata),
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "degraded": self.degraded,
            "error_count": self.error_count,
            "failure_reason": self.failure_reason,
            "next_expected_sequence": self.next_expected_sequence,
        }

    def summary(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "status": self.state.value,
            "started_at": isoformat(self.started_at),
            "transcription_length": len(self.transcript_text),
            "segments": len(self.full_transcript),
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class SessionEvent:
    type: EventType
    call_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "call_id": self.call_id,
            "event_id": self.event_id,
            "payload": self.payload,
        }
