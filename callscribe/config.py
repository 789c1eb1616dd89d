"""Runtime configuration for the transcription service.

Values come from the process environment (optionally pre-populated from a
``.env`` file via python-dotenv).  Every setting has a default in
``callscribe.constants`` so the service boots with nothing configured; it
simply cannot reach an STT provider or Supabase until keys are supplied.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from callscribe import constants

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[Config] %s=%r is not a number — using default %s.", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[Config] %s=%r is not an integer — using default %s.", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    stt_provider: str = constants.DEFAULT_STT_PROVIDER
    stt_language: str = constants.DEFAULT_STT_LANGUAGE
    deepgram_api_key: str = ""
    openai_api_key: str = ""
    chunk_window_ms: int = constants.CHUNK_WINDOW_MS
    frame_bytes: int = constants.TWILIO_FRAME_BYTES
    idle_timeout: float = constants.SESSION_IDLE_TIMEOUT
    drain_timeout: float = constants.SESSION_DRAIN_TIMEOUT
    stt_request_timeout: float = constants.STT_REQUEST_TIMEOUT
    stt_max_retries: int = constants.STT_MAX_RETRIES
    stt_backoff_base: float = constants.STT_BACKOFF_BASE
    eviction_delay: float = constants.SESSION_EVICTION_DELAY
    subscriber_send_timeout: float = constants.SUBSCRIBER_SEND_TIMEOUT
    supabase_url: str = ""
    supabase_key: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``os.environ`` (call ``load_env`` first)."""
        return cls(
            stt_provider=os.environ.get("STT_PROVIDER", constants.DEFAULT_STT_PROVIDER).lower(),
            stt_language=os.environ.get("STT_LANGUAGE", constants.DEFAULT_STT_LANGUAGE),
            deepgram_api_key=os.environ.get("DEEPGRAM_API_KEY", ""),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            chunk_window_ms=_env_int("CHUNK_WINDOW_MS", constants.CHUNK_WINDOW_MS),
            frame_bytes=_env_int("FRAME_BYTES", constants.TWILIO_FRAME_BYTES),
            idle_timeout=_env_float("IDLE_TIMEOUT_SECONDS", constants.SESSION_IDLE_TIMEOUT),
            drain_timeout=_env_float("DRAIN_TIMEOUT_SECONDS", constants.SESSION_DRAIN_TIMEOUT),
            stt_request_timeout=_env_float("STT_REQUEST_TIMEOUT_SECONDS", constants.STT_REQUEST_TIMEOUT),
            stt_max_retries=_env_int("STT_MAX_RETRIES", constants.STT_MAX_RETRIES),
            stt_backoff_base=_env_float("STT_BACKOFF_SECONDS", constants.STT_BACKOFF_BASE),
            eviction_delay=_env_float("EVICTION_DELAY_SECONDS", constants.SESSION_EVICTION_DELAY),
            subscriber_send_timeout=_env_float(
                "SUBSCRIBER_SEND_TIMEOUT_SECONDS", constants.SUBSCRIBER_SEND_TIMEOUT
            ),
            supabase_url=os.environ.get("SUPABASE_URL", ""),
            supabase_key=os.environ.get("SUPABASE_SERVICE_KEY", ""),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_env() -> None:
    """Populate ``os.environ`` from a local ``.env`` without overriding real env vars."""
    load_dotenv(override=False)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=_LOG_FORMAT)
