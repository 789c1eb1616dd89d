"""Error taxonomy and the structured error envelope sent over WebSocket.

Every error that leaves the service follows a consistent JSON shape so
subscribers can render it and the backend logs remain machine-parseable.
Only *fatal* categories change a session's state; everything else degrades
the session and is surfaced as metadata.

Error codes
-----------
E_DECODE_FAILED        Malformed telephony audio (fatal to the session).
E_STT_FAILED           STT provider failed a chunk (non-fatal).
E_PERSISTENCE_FAILED   Snapshot save failed (non-fatal, retried out-of-band).
E_IDLE_TIMEOUT         No audio within the idle window (fatal).
E_ABORTED              Explicit abort (fatal).
E_DELIVERY_FAILED      One subscriber could not be reached (isolated).
E_PROTOCOL             Unparseable message on a socket (message skipped).
E_SESSION_NOT_FOUND    Subscribed to a call with no live session (non-fatal).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

from callscribe.telemetry import current_trace_id

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    E_DECODE_FAILED = "E_DECODE_FAILED"
    E_STT_FAILED = "E_STT_FAILED"
    E_PERSISTENCE_FAILED = "E_PERSISTENCE_FAILED"
    E_IDLE_TIMEOUT = "E_IDLE_TIMEOUT"
    E_ABORTED = "E_ABORTED"
    E_DELIVERY_FAILED = "E_DELIVERY_FAILED"
    E_PROTOCOL = "E_PROTOCOL"
    E_SESSION_NOT_FOUND = "E_SESSION_NOT_FOUND"


class CallscribeError(Exception):
    """Base class for every error raised inside the transcription service."""

    code: ErrorCode = ErrorCode.E_PROTOCOL
    fatal: bool = False

    def __init__(self, message: str = "", *, call_id: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.call_id = call_id


class DecodeError(CallscribeError):
    code = ErrorCode.E_DECODE_FAILED
    fatal = True


class TranscriptionProviderError(CallscribeError):
    """An STT request failed.  ``retryable`` separates 5xx/timeouts from 4xx."""

    code = ErrorCode.E_STT_FAILED

    def __init__(
        self,
        message: str = "",
        *,
        call_id: str = "",
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, call_id=call_id)
        self.status_code = status_code
        self.retryable = retryable


class PersistenceError(CallscribeError):
    code = ErrorCode.E_PERSISTENCE_FAILED


class IdleTimeoutError(CallscribeError):
    code = ErrorCode.E_IDLE_TIMEOUT
    fatal = True


class AbortError(CallscribeError):
    code = ErrorCode.E_ABORTED
    fatal = True


class SubscriberDeliveryError(CallscribeError):
    code = ErrorCode.E_DELIVERY_FAILED


class ProtocolError(CallscribeError):
    code = ErrorCode.E_PROTOCOL


class SessionNotFoundError(CallscribeError):
    code = ErrorCode.E_SESSION_NOT_FOUND


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    recoverable: bool = True
    call_id: str = ""
    details: dict[str, Any] | None = field(default=None)

    @classmethod
    def from_exception(cls, exc: CallscribeError) -> "ErrorEnvelope":
        trace_id = current_trace_id()
        return cls(
            code=exc.code.value,
            message=exc.message or str(exc),
            recoverable=not exc.fatal,
            call_id=exc.call_id,
            details={"trace_id": trace_id} if trace_id else None,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "call_id": self.call_id,
        }
        if self.details:
            d["details"] = self.details
        return d


async def send_error(websocket: WebSocket, error: ErrorEnvelope) -> None:
    """Serialize *error* and send it as a JSON message on *websocket*.

    Silently catches send failures (the socket may already be closed).
    """
    try:
        await websocket.send_json(error.to_dict())
        logger.warning(
            "[Error] Sent %s to client: %s (call=%s)",
            error.code,
            error.message,
            error.call_id,
        )
    except Exception as exc:
        logger.debug("[Error] Failed to send error to client: %s", exc)
