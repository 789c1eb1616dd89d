"""Twilio Media Streams → SessionManager bridge.

Twilio opens one WebSocket per call and sends JSON text messages::

    {"event": "connected", ...}
    {"event": "start", "start": {"callSid": ..., "streamSid": ..., "tracks": [...]}}
    {"event": "media", "sequenceNumber": "3", "media": {"track": "inbound", "payload": "<b64 mu-law>"}}
    {"event": "stop", ...}

``start`` opens the session, each ``media`` becomes an ``AudioFrame`` and
``stop`` is the final frame.  A socket that closes without ``stop`` is
treated as stream end as well.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from callscribe.errors import ProtocolError
from callscribe.models import AudioFrame
from callscribe.session.manager import SessionManager

logger = logging.getLogger(__name__)


class _TwilioModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MediaFormat(_TwilioModel):
    encoding: str = "audio/x-mulaw"
    sample_rate: int = Field(default=8000, alias="sampleRate")
    channels: int = 1


class StartPayload(_TwilioModel):
    call_sid: str = Field(alias="callSid")
    stream_sid: str = Field(default="", alias="streamSid")
    account_sid: str = Field(default="", alias="accountSid")
    tracks: list[str] = Field(default_factory=lambda: ["inbound"])
    custom_parameters: dict[str, Any] = Field(default_factory=dict, alias="customParameters")
    media_format: MediaFormat | None = Field(default=None, alias="mediaFormat")


class MediaPayload(_TwilioModel):
    track: str = "inbound"
    chunk: int | None = None
    timestamp: int | None = None
    payload: str = ""


class StopPayload(_TwilioModel):
    call_sid: str = Field(default="", alias="callSid")
    account_sid: str = Field(default="", alias="accountSid")


class TwilioMessage(_TwilioModel):
    event: str
    sequence_number: int | None = Field(default=None, alias="sequenceNumber")
    stream_sid: str | None = Field(default=None, alias="streamSid")
    start: StartPayload | None = None
    media: MediaPayload | None = None
    stop: StopPayload | None = None
    mark: dict[str, Any] | None = None


def parse_message(raw: str | bytes) -> TwilioMessage:
    """Parse one Media Streams message.  Raises ``ProtocolError`` when malformed."""
    try:
        return TwilioMessage.model_validate_json(raw)
    except ValidationError as exc:
        raise ProtocolError(f"invalid Twilio message: {exc.errors()[0].get('msg', exc)}") from exc


class TwilioStreamBridge:
    """Translates one Media Stream connection into session control + frames.

    Parameters
    ----------
    manager : SessionManager
        Receives ``start``/``stop`` and every audio frame.
    track : str
        Only media on this track is transcribed; with ``both_tracks`` the
        other leg would otherwise be interleaved into the same audio.
    """

    def __init__(self, manager: SessionManager, *, track: str = "inbound") -> None:
        self._manager = manager
        self._track = track
        self.call_sid: str | None = None
        self.stream_sid: str | None = None
        self._stopped = False

    async def handle_raw(self, raw: str | bytes) -> None:
        try:
            message = parse_message(raw)
        except ProtocolError as exc:
            logger.warning("[Twilio] Skipping malformed message: %s", exc)
            return
        await self.handle(message)

    async def handle(self, message: TwilioMessage) -> None:
        event = message.event

        if event == "connected":
            logger.info("[Twilio] Media Stream connected.")

        elif event == "start" and message.start is not None:
            start = message.start
            self.call_sid = start.call_sid
            self.stream_sid = start.stream_sid or message.stream_sid
            metadata: dict[str, Any] = {
                "stream_sid": self.stream_sid,
                "account_sid": start.account_sid,
                "tracks": start.tracks,
                "custom_parameters": start.custom_parameters,
            }
            if start.media_format is not None:
                metadata["media_format"] = start.media_format.model_dump()
            await self._manager.start(start.call_sid, metadata)
            logger.info("[Twilio] Started media stream %s for call %s.", self.stream_sid, self.call_sid)

        elif event == "media" and message.media is not None:
            if self.call_sid is None:
                logger.warning("[Twilio] Media before start — dropped.")
                return
            if message.media.track != self._track:
                return
            await self._manager.ingest_frame(
                AudioFrame(
                    call_id=self.call_sid,
                    payload=message.media.payload,
                    sequence_hint=message.sequence_number,
                )
            )

        elif event == "stop":
            if self.call_sid is None:
                logger.warning("[Twilio] Stop before start — ignored.")
                return
            self._stopped = True
            await self._manager.ingest_frame(
                AudioFrame(call_id=self.call_sid, payload="", sequence_hint=message.sequence_number, is_final_frame=True)
            )
            logger.info("[Twilio] Stopped media stream for call %s.", self.call_sid)

        elif event == "mark":
            logger.debug("[Twilio] Mark %s on %s.", message.mark, self.stream_sid)

        else:
            logger.debug("[Twilio] Ignoring %r event.", event)

    async def close(self) -> None:
        """Socket closed; end the stream if Twilio never sent ``stop``."""
        if self.call_sid is None or self._stopped:
            return
        self._stopped = True
        logger.info("[Twilio] Media Stream for %s disconnected without stop — ending stream.", self.call_sid)
        await self._manager.stop(self.call_sid)
