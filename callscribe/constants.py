"""Centralized constants for the callscribe transcription service.

All magic numbers and timeout values should be defined here for easy maintenance.
"""

# Telephony audio (Twilio Media Streams: mu-law, 8 kHz, mono)
TELEPHONY_SAMPLE_RATE: int = 8_000
TWILIO_FRAME_BYTES: int = 160  # 20ms of mu-law at 8kHz
PCM_SAMPLE_WIDTH: int = 2  # int16 -> 2 bytes per sample

# Chunking
CHUNK_WINDOW_MS: int = 5_000  # STT request every 5s of audio

# STT provider (seconds)
STT_REQUEST_TIMEOUT: float = 15.0  # Per-attempt deadline
STT_MAX_RETRIES: int = 2  # Retries after the first attempt
STT_BACKOFF_BASE: float = 0.5  # 0.5s, 1.0s, ...
DEFAULT_STT_PROVIDER: str = "deepgram"
DEFAULT_STT_LANGUAGE: str = "en"

# Session lifecycle (seconds)
SESSION_IDLE_TIMEOUT: float = 30.0  # No frames for this long -> failed(idle_timeout)
SESSION_DRAIN_TIMEOUT: float = 60.0  # Stream ended but chunks still in flight -> failed(drain_timeout)
SESSION_EVICTION_DELAY: float = 60.0  # Terminal sessions linger for late subscribers

# Persistence retry
PERSIST_MAX_RETRIES: int = 3
PERSIST_BACKOFF_BASE: float = 0.5

# Subscriber delivery (seconds)
SUBSCRIBER_SEND_TIMEOUT: float = 5.0

# Supabase
TRANSCRIPTIONS_TABLE: str = "call_transcriptions"
MAX_ERROR_MESSAGE_CHARS: int = 4_000

# Failure reasons
REASON_IDLE_TIMEOUT: str = "idle_timeout"
REASON_DECODE_ERROR: str = "decode_error"
REASON_ABORTED: str = "aborted"
REASON_DRAIN_TIMEOUT: str = "drain_timeout"
