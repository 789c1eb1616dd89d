"""Centralized ID and timestamp helpers."""

import uuid
from datetime import datetime, timezone


def generate_connection_id(prefix: str = "sub") -> str:
    """Generate a short identifier for a subscriber connection.

    Args:
        prefix: Prefix for the ID (e.g. 'sub', 'twilio').

    Returns:
        ``{prefix}-{8 hex chars}``.
    """
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def generate_call_sid() -> str:
    """Generate a Twilio-shaped call SID (``CA`` + 32 hex chars) for local replays."""
    return f"CA{uuid.uuid4().hex}"


def generate_stream_sid() -> str:
    return f"MZ{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None
