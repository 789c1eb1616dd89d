"""Tests for the Twilio Media Streams bridge.

Run:
    pytest tests/test_twilio_stream.py -v
"""

import json
from unittest.mock import AsyncMock

import pytest

from callscribe.errors import ProtocolError
from callscribe.telephony.twilio_stream import TwilioStreamBridge, parse_message

START = {
    "event": "start",
    "sequenceNumber": "1",
    "streamSid": "MZ1",
    "start": {
        "callSid": "CA1",
        "streamSid": "MZ1",
        "accountSid": "AC1",
        "tracks": ["inbound"],
        "customParameters": {"agent": "42"},
        "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
    },
}


def _media(seq, track="inbound", payload="//8="):
    return json.dumps({
        "event": "media",
        "sequenceNumber": str(seq),
        "streamSid": "MZ1",
        "media": {"track": track, "chunk": "1", "timestamp": "5", "payload": payload},
    })


def test_parse_message_coerces_sequence_number():
    message = parse_message(_media(3))
    assert message.event == "media"
    assert message.sequence_number == 3
    assert message.media.payload == "//8="


def test_parse_message_rejects_garbage():
    with pytest.raises(ProtocolError):
        parse_message("{not json")
    with pytest.raises(ProtocolError):
        parse_message(json.dumps({"no": "event"}))


class TestTwilioStreamBridge:
    @pytest.mark.asyncio
    async def test_start_opens_session_with_metadata(self):
        manager = AsyncMock()
        bridge = TwilioStreamBridge(manager)

        await bridge.handle_raw(json.dumps(START))

        manager.start.assert_awaited_once()
        call_id, metadata = manager.start.call_args[0]
        assert call_id == "CA1"
        assert metadata["stream_sid"] == "MZ1"
        assert metadata["account_sid"] == "AC1"
        assert metadata["custom_parameters"] == {"agent": "42"}
        assert metadata["media_format"]["sample_rate"] == 8000
        assert bridge.call_sid == "CA1"

    @pytest.mark.asyncio
    async def test_media_becomes_audio_frame(self):
        manager = AsyncMock()
        bridge = TwilioStreamBridge(manager)
        await bridge.handle_raw(json.dumps(START))

        await bridge.handle_raw(_media(2))

        frame = manager.ingest_frame.call_args[0][0]
        assert frame.call_id == "CA1"
        assert frame.payload == "//8="
        assert frame.sequence_hint == 2
        assert frame.is_final_frame is False

    @pytest.mark.asyncio
    async def test_outbound_track_is_skipped(self):
        manager = AsyncMock()
        bridge = TwilioStreamBridge(manager)
        await bridge.handle_raw(json.dumps(START))

        await bridge.handle_raw(_media(2, track="outbound"))

        manager.ingest_frame.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_media_before_start_is_dropped(self):
        manager = AsyncMock()
        bridge = TwilioStreamBridge(manager)

        await bridge.handle_raw(_media(2))

        manager.ingest_frame.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_sends_final_frame(self):
        manager = AsyncMock()
        bridge = TwilioStreamBridge(manager)
        await bridge.handle_raw(json.dumps(START))

        await bridge.handle_raw(json.dumps({"event": "stop", "sequenceNumber": "9", "stop": {"callSid": "CA1"}}))
        await bridge.close()

        frame = manager.ingest_frame.call_args[0][0]
        assert frame.is_final_frame is True
        assert frame.payload == ""
        manager.stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_without_stop_ends_stream(self):
        manager = AsyncMock()
        bridge = TwilioStreamBridge(manager)
        await bridge.handle_raw(json.dumps(START))

        await bridge.close()
        await bridge.close()

        manager.stop.assert_awaited_once_with("CA1")

    @pytest.mark.asyncio
    async def test_close_before_start_is_noop(self):
        manager = AsyncMock()
        await TwilioStreamBridge(manager).close()
        manager.stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_message_is_skipped(self):
        manager = AsyncMock()
        bridge = TwilioStreamBridge(manager)

        await bridge.handle_raw("not json at all")
        await bridge.handle_raw(json.dumps({"event": "connected", "protocol": "Call"}))

        manager.start.assert_not_awaited()
        manager.ingest_frame.assert_not_awaited()
