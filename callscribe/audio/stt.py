"""Speech-to-text adapters for fixed-window call audio.

Each adapter turns one ``AudioChunk`` into one ``TranscriptionResult``.
Provider failures never escape ``transcribe()``: transient ones (timeouts,
network errors, 5xx, 429) are retried with exponential backoff, client
errors (4xx) are returned immediately as an errored result so the session
can place an empty segment and carry on.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from callscribe import constants
from callscribe.audio.decoder import pcm16_to_wav
from callscribe.config import Settings
from callscribe.errors import TranscriptionProviderError
from callscribe.models import AudioChunk, PCM16Buffer, TranscriptionResult
from callscribe.telemetry import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer()


def _is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class TranscriptionClient:
    """Retry/backoff shell around a single provider request.

    Subclasses implement ``_request`` and may raise ``httpx`` errors or
    ``TranscriptionProviderError``; classification happens here.

    Parameters
    ----------
    api_key : str
        Provider API key.  An empty key yields errored results, not exceptions.
    language : str
        Language hint passed to the provider.
    request_timeout : float
        Deadline for one attempt; exceeding it counts as a transient failure.
    max_retries : int
        Retries after the first attempt (2 → at most 3 requests).
    backoff_base : float
        First backoff delay in seconds; doubles on every retry.
    """

    provider = "base"

    def __init__(
        self,
        api_key: str,
        *,
        language: str = constants.DEFAULT_STT_LANGUAGE,
        request_timeout: float = constants.STT_REQUEST_TIMEOUT,
        max_retries: int = constants.STT_MAX_RETRIES,
        backoff_base: float = constants.STT_BACKOFF_BASE,
    ) -> None:
        self._api_key = api_key
        self._language = language
        self._request_timeout = request_timeout
        self._max_retries = max_retries
        self._backoff_base = backoff_base

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        """Transcribe *chunk*, retrying transient provider failures."""
        with tracer.start_as_current_span(
            "callscribe.stt",
            attributes={
                "stt.provider": self.provider,
                "call.id": chunk.session_id,
                "chunk.sequence": chunk.sequence,
                "audio.bytes": len(chunk.pcm_data),
            },
        ):
            if not chunk.pcm_data:
                return TranscriptionResult(sequence=chunk.sequence, duration_ms=0.0)

            if not self._api_key:
                logger.error("[STT] %s API key not set — cannot transcribe.", self.provider)
                return TranscriptionResult.from_error(chunk.sequence, f"{self.provider} API key not configured")

            last_error: Exception | None = None
            for attempt in range(self._max_retries + 1):
                try:
                    return await asyncio.wait_for(self._request(chunk), timeout=self._request_timeout)
                except asyncio.TimeoutError as exc:
                    last_error = exc
                    logger.warning(
                        "[STT] %s request for %s#%d timed out after %.1fs (attempt %d/%d)",
                        self.provider, chunk.session_id, chunk.sequence,
                        self._request_timeout, attempt + 1, self._max_retries + 1,
                    )
                except httpx.HTTPStatusError as exc:
                    last_error = exc
                    status = exc.response.status_code
                    if not _is_retryable_status(status):
                        logger.error("[STT] %s client error %d for %s#%d: %s", self.provider, status, chunk.session_id, chunk.sequence, exc)
                        return TranscriptionResult.from_error(chunk.sequence, f"{self.provider} rejected chunk with HTTP {status}")
                    logger.warning("[STT] %s server error %d (attempt %d/%d)", self.provider, status, attempt + 1, self._max_retries + 1)
                except httpx.TransportError as exc:
                    last_error = exc
                    logger.warning("[STT] %s network error (attempt %d/%d): %s", self.provider, attempt + 1, self._max_retries + 1, exc)
                except TranscriptionProviderError as exc:
                    last_error = exc
                    if not exc.retryable:
                        logger.error("[STT] %s failed chunk %s#%d: %s", self.provider, chunk.session_id, chunk.sequence, exc)
                        return TranscriptionResult.from_error(chunk.sequence, str(exc))
                    logger.warning("[STT] %s transient failure (attempt %d/%d): %s", self.provider, attempt + 1, self._max_retries + 1, exc)

                if attempt < self._max_retries:
                    await asyncio.sleep(self._backoff_base * (2 ** attempt))

            logger.error("[STT] All %d transcription attempts failed for %s#%d: %s", self._max_retries + 1, chunk.session_id, chunk.sequence, last_error)
            return TranscriptionResult.from_error(chunk.sequence, f"{self.provider} unavailable: {last_error!r}")

    async def _request(self, chunk: AudioChunk) -> TranscriptionResult:
        raise NotImplementedError


class DeepgramTranscriber(TranscriptionClient):
    """Deepgram pre-recorded endpoint, fed raw linear16 at the telephony rate."""

    provider = "deepgram"
    API_URL = "https://api.deepgram.com/v1/listen"
    MODEL = "nova-2"

    async def _request(self, chunk: AudioChunk) -> TranscriptionResult:
        url = (
            f"{self.API_URL}"
            f"?encoding=linear16&sample_rate={chunk.sample_rate}"
            f"&channels=1&model={self.MODEL}&smart_format=true&punctuate=true"
            f"&language={self._language}"
        )
        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": "audio/raw",
        }

        async with httpx.AsyncClient(timeout=self._request_timeout) as client:
            response = await client.post(url, headers=headers, content=chunk.pcm_data)
            response.raise_for_status()
            data = response.json()

        try:
            channel = data["results"]["channels"][0]
            alternative = channel["alternatives"][0]
            if not isinstance(alternative, dict):
                raise TypeError(type(alternative).__name__)
        except (KeyError, IndexError, TypeError):
            raise TranscriptionProviderError(f"malformed Deepgram response: {data!r}", call_id=chunk.session_id, retryable=False)

        transcript = (alternative.get("transcript") or "").strip()
        logger.info("[STT] %s#%d: %s", chunk.session_id, chunk.sequence, transcript)
        return TranscriptionResult(
            sequence=chunk.sequence,
            text=transcript,
            is_final=True,
            confidence=alternative.get("confidence"),
            language_code=channel.get("detected_language") or self._language,
            duration_ms=chunk.duration_ms,
        )


class WhisperTranscriber(TranscriptionClient):
    """OpenAI Whisper; the chunk is uploaded as a WAV file."""

    provider = "whisper"
    API_URL = "https://api.openai.com/v1/audio/transcriptions"
    MODEL = "whisper-1"

    async def _request(self, chunk: AudioChunk) -> TranscriptionResult:
        wav = pcm16_to_wav(PCM16Buffer(samples=chunk.pcm_data, sample_rate=chunk.sample_rate))
        headers = {"Authorization": f"Bearer {self._api_key}"}
        files = {"file": (f"{chunk.session_id}-{chunk.sequence}.wav", wav, "audio/wav")}
        form = {"model": self.MODEL, "language": self._language, "response_format": "json"}

        async with httpx.AsyncClient(timeout=self._request_timeout) as client:
            response = await client.post(self.API_URL, headers=headers, files=files, data=form)
            response.raise_for_status()
            data = response.json()

        if not isinstance(data, dict) or "text" not in data:
            raise TranscriptionProviderError(f"malformed Whisper response: {data!r}", call_id=chunk.session_id, retryable=False)

        transcript = (data.get("text") or "").strip()
        logger.info("[STT] %s#%d: %s", chunk.session_id, chunk.sequence, transcript)
        return TranscriptionResult(
            sequence=chunk.sequence,
            text=transcript,
            is_final=True,
            language_code=data.get("language") or self._language,
            duration_ms=chunk.duration_ms,
        )


_PROVIDERS: dict[str, type[TranscriptionClient]] = {
    DeepgramTranscriber.provider: DeepgramTranscriber,
    WhisperTranscriber.provider: WhisperTranscriber,
}


def build_transcriber(settings: Settings) -> TranscriptionClient:
    """Instantiate the STT adapter named by ``settings.stt_provider``."""
    cls = _PROVIDERS.get(settings.stt_provider)
    if cls is None:
        logger.warning("[STT] Unknown STT_PROVIDER %r — falling back to deepgram.", settings.stt_provider)
        cls = DeepgramTranscriber
    api_key = settings.openai_api_key if cls is WhisperTranscriber else settings.deepgram_api_key
    return cls(
        api_key,
        language=settings.stt_language,
        request_timeout=settings.stt_request_timeout,
        max_retries=settings.stt_max_retries,
        backoff_base=settings.stt_backoff_base,
    )
