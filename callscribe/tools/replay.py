"""Replay a recorded call into a running callscribe service.

Speaks the Twilio Media Streams protocol over ``/ws/twilio-media`` so the
full ingest path (decode, chunking, STT, merge) can be exercised without a
phone.  Accepts a 16-bit mono WAV (re-encoded to mu-law; resample to 8 kHz
first) or a raw ``.ulaw`` capture.

    python -m callscribe.tools.replay call.wav --url ws://localhost:8001 --watch
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
import wave
from pathlib import Path
from typing import Iterator

import numpy as np
import websockets

from callscribe import constants
from callscribe.config import configure_logging
from callscribe.utils import generate_call_sid, generate_stream_sid

logger = logging.getLogger(__name__)

_MULAW_BIAS = 0x84
_MULAW_CLIP = 32635
_FRAME_SECONDS = constants.TWILIO_FRAME_BYTES / constants.TELEPHONY_SAMPLE_RATE


def pcm16_to_mulaw(pcm: bytes) -> bytes:
    """G.711 compress little-endian PCM-16 into mu-law bytes."""
    samples = np.frombuffer(pcm, dtype="<i2").astype(np.int32)
    sign = (samples < 0).astype(np.int32) << 7
    magnitude = np.minimum(np.abs(samples), _MULAW_CLIP) + _MULAW_BIAS
    exponent = np.clip(np.floor(np.log2(magnitude)).astype(np.int32) - 7, 0, 7)
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    codes = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return codes.astype(np.uint8).tobytes()


def load_mulaw(path: Path) -> bytes:
    if path.suffix.lower() != ".wav":
        return path.read_bytes()

    with wave.open(str(path), "rb") as wav:
        if wav.getnchannels() != 1 or wav.getsampwidth() != constants.PCM_SAMPLE_WIDTH:
            raise ValueError(f"{path} must be 16-bit mono PCM")
        if wav.getframerate() != constants.TELEPHONY_SAMPLE_RATE:
            logger.warning(
                "[Replay] %s is %d Hz; it will be streamed as %d Hz.",
                path, wav.getframerate(), constants.TELEPHONY_SAMPLE_RATE,
            )
        pcm = wav.readframes(wav.getnframes())
    return pcm16_to_mulaw(pcm)


def build_stream_messages(
    mulaw: bytes,
    call_sid: str,
    stream_sid: str | None = None,
    *,
    frame_bytes: int = constants.TWILIO_FRAME_BYTES,
) -> Iterator[str]:
    """Yield the JSON messages Twilio would send for *mulaw*.

    A trailing partial frame is padded with mu-law silence (0xFF) so every
    media payload stays a whole frame.
    """
    stream_sid = stream_sid or generate_stream_sid()
    sequence = 1

    yield json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"})
    yield json.dumps({
        "event": "start",
        "sequenceNumber": str(sequence),
        "streamSid": stream_sid,
        "start": {
            "callSid": call_sid,
            "streamSid": stream_sid,
            "accountSid": "",
            "tracks": ["inbound"],
            "customParameters": {"source": "replay"},
            "mediaFormat": {
                "encoding": "audio/x-mulaw",
                "sampleRate": constants.TELEPHONY_SAMPLE_RATE,
                "channels": 1,
            },
        },
    })

    for chunk_index, offset in enumerate(range(0, len(mulaw), frame_bytes), start=1):
        frame = mulaw[offset:offset + frame_bytes]
        if len(frame) < frame_bytes:
            frame = frame + b"\xff" * (frame_bytes - len(frame))
        sequence += 1
        yield json.dumps({
            "event": "media",
            "sequenceNumber": str(sequence),
            "streamSid": stream_sid,
            "media": {
                "track": "inbound",
                "chunk": str(chunk_index),
                "timestamp": str(offset * 1000 // constants.TELEPHONY_SAMPLE_RATE),
                "payload": base64.b64encode(frame).decode("ascii"),
            },
        })

    sequence += 1
    yield json.dumps({
        "event": "stop",
        "sequenceNumber": str(sequence),
        "streamSid": stream_sid,
        "stop": {"callSid": call_sid, "accountSid": ""},
    })


async def _watch(url: str, call_sid: str) -> None:
    async with websockets.connect(f"{url}/ws/transcripts/{call_sid}") as ws:
        async for raw in ws:
            event = json.loads(raw)
            kind = event.get("type")
            payload = event.get("payload", {})
            if kind == "final_update":
                print(f"[{payload.get('sequence')}] {payload.get('text')}")
            elif kind in ("completed", "failed"):
                print(f"== {kind}: {payload.get('transcription', '')}")
                return


async def replay(url: str, mulaw: bytes, *, call_sid: str, realtime: bool = True, watch: bool = False) -> None:
    watcher: asyncio.Task | None = None
    async with websockets.connect(f"{url}/ws/twilio-media") as ws:
        messages = build_stream_messages(mulaw, call_sid)
        # connected + start, then give the session a moment to exist for the watcher
        await ws.send(next(messages))
        await ws.send(next(messages))
        if watch:
            await asyncio.sleep(0.2)
            watcher = asyncio.create_task(_watch(url, call_sid))

        sent = 0
        for message in messages:
            await ws.send(message)
            sent += 1
            if realtime:
                await asyncio.sleep(_FRAME_SECONDS)
        logger.info("[Replay] Sent %d message(s) for %s.", sent, call_sid)

    if watcher is not None:
        await watcher


def main() -> int:
    parser = argparse.ArgumentParser(description="Stream a recording to callscribe as a Twilio call.")
    parser.add_argument("audio_path", type=Path, help="16-bit mono WAV or raw mu-law file.")
    parser.add_argument("--url", default="ws://localhost:8001", help="Service base URL.")
    parser.add_argument("--call-sid", default=None, help="Call SID to use (random by default).")
    parser.add_argument("--fast", action="store_true", help="Send frames without real-time pacing.")
    parser.add_argument("--watch", action="store_true", help="Print transcript events as they arrive.")
    args = parser.parse_args()

    configure_logging("INFO")
    call_sid = args.call_sid or generate_call_sid()
    mulaw = load_mulaw(args.audio_path)
    logger.info("[Replay] %s → %s as %s (%.1fs).", args.audio_path, args.url, call_sid, len(mulaw) / constants.TELEPHONY_SAMPLE_RATE)
    asyncio.run(replay(args.url.rstrip("/"), mulaw, call_sid=call_sid, realtime=not args.fast, watch=args.watch))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
