"""G.711 mu-law decoding for Twilio Media Stream payloads.

Twilio delivers 8 kHz mono mu-law, base64-encoded, in 20 ms (160 byte)
frames.  STT providers want linear PCM-16, so every frame is expanded
through the standard ITU-T G.711 table before it reaches the accumulator.
"""

from __future__ import annotations

import base64
import binascii
import io
import wave

import numpy as np

from callscribe import constants
from callscribe.errors import DecodeError
from callscribe.models import PCM16Buffer

_MULAW_BIAS = 0x84


def _build_expansion_table() -> np.ndarray:
    table = np.zeros(256, dtype=np.int16)
    for code in range(256):
        u = ~code & 0xFF
        exponent = (u >> 4) & 0x07
        mantissa = u & 0x0F
        magnitude = (((mantissa << 3) + _MULAW_BIAS) << exponent) - _MULAW_BIAS
        table[code] = -magnitude if u & 0x80 else magnitude
    return table


MULAW_TO_PCM16: np.ndarray = _build_expansion_table()


def decode_mulaw(data: bytes) -> bytes:
    """Expand raw mu-law bytes into little-endian PCM-16 bytes."""
    codes = np.frombuffer(data, dtype=np.uint8)
    return MULAW_TO_PCM16[codes].astype("<i2").tobytes()


def pcm16_to_wav(buffer: PCM16Buffer) -> bytes:
    """Wrap PCM-16 samples in a mono RIFF/WAV container."""
    out = io.BytesIO()
    with wave.open(out, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(constants.PCM_SAMPLE_WIDTH)
        wav.setframerate(buffer.sample_rate)
        wav.writeframes(buffer.samples)
    return out.getvalue()


class AudioFrameDecoder:
    """Turns base64 mu-law telephony frames into ``PCM16Buffer`` objects.

    Parameters
    ----------
    frame_bytes : int
        Payloads must be a whole number of frames of this many mu-law bytes
        (160 = 20 ms at 8 kHz, Twilio's framing).  Use 1 to accept any length.
    sample_rate : int
        Sample rate stamped on the decoded buffer.
    """

    def __init__(
        self,
        *,
        frame_bytes: int = constants.TWILIO_FRAME_BYTES,
        sample_rate: int = constants.TELEPHONY_SAMPLE_RATE,
    ) -> None:
        if frame_bytes < 1:
            raise ValueError("frame_bytes must be positive")
        self._frame_bytes = frame_bytes
        self._sample_rate = sample_rate

    @property
    def frame_bytes(self) -> int:
        return self._frame_bytes

    def decode(self, raw_frame: str | bytes) -> PCM16Buffer:
        """Decode one base64 payload.  Raises ``DecodeError`` on malformed input."""
        if not raw_frame:
            raise DecodeError("empty audio frame")

        try:
            mulaw = base64.b64decode(raw_frame, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"payload is not valid base64: {exc}") from exc

        if not mulaw:
            raise DecodeError("empty audio frame")
        if len(mulaw) % self._frame_bytes:
            raise DecodeError(
                f"frame of {len(mulaw)} bytes is not a multiple of {self._frame_bytes}"
            )

        return PCM16Buffer(samples=decode_mulaw(mulaw), sample_rate=self._sample_rate)
