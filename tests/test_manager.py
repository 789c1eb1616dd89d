"""Tests for SessionManager: lifecycle, ordered merge and fan-out.

Chunks are released by the test, one sequence at a time, so completion
order is fully controlled.  A 20 ms accumulator window makes every
Twilio frame exactly one chunk.

Run:
    pytest tests/test_manager.py -v
"""

import asyncio
import base64
import random
from collections import defaultdict
from dataclasses import dataclass

import pytest

from callscribe.audio.accumulator import ChunkAccumulator
from callscribe.db import InMemoryTranscriptStore
from callscribe.models import AudioFrame, SessionState, TranscriptionResult
from callscribe.session.hub import SubscriptionHub
from callscribe.session.manager import SessionManager
from callscribe.session.snapshot_queue import SnapshotQueue
from callscribe.session.store import SessionStore

FRAME = base64.b64encode(b"\xff" * 160).decode("ascii")


class GatedTranscriber:
    """Returns each chunk's scripted text once the test releases its sequence."""

    def __init__(self, texts=None, errors=(), auto=False):
        self.texts = texts or {}
        self.errors = set(errors)
        self.auto = auto
        self.gates = defaultdict(asyncio.Event)
        self.seen = []

    async def transcribe(self, chunk):
        self.seen.append(chunk.sequence)
        if not self.auto:
            await self.gates[chunk.sequence].wait()
        if chunk.sequence in self.errors:
            return TranscriptionResult.from_error(chunk.sequence, "deepgram rejected chunk with HTTP 400")
        return TranscriptionResult(sequence=chunk.sequence, text=self.texts.get(chunk.sequence, f"w{chunk.sequence}"))

    def release(self, *sequences):
        for seq in sequences:
            self.gates[seq].set()


class PartialOnlyTranscriber:
    """Streaming-style provider whose last word on a chunk is never marked final."""

    async def transcribe(self, chunk):
        return TranscriptionResult(sequence=chunk.sequence, text=f"hel{chunk.sequence}", is_final=False)


class Recorder:
    def __init__(self):
        self.messages = []

    async def send(self, message):
        self.messages.append(message)

    def of_type(self, kind):
        return [m for m in self.messages if m["type"] == kind]


@dataclass
class Harness:
    manager: SessionManager
    sessions: SessionStore
    hub: SubscriptionHub
    persistence: InMemoryTranscriptStore
    snapshots: SnapshotQueue
    transcriber: GatedTranscriber


def make_harness(transcriber=None, *, window_ms=20, idle_timeout=0, drain_timeout=60, eviction_delay=60):
    transcriber = transcriber or GatedTranscriber()
    sessions = SessionStore()
    hub = SubscriptionHub(send_timeout=1.0)
    persistence = InMemoryTranscriptStore()
    snapshots = SnapshotQueue(persistence, backoff_base=0.0)
    manager = SessionManager(
        sessions,
        hub,
        transcriber,
        snapshots,
        accumulator=ChunkAccumulator(window_ms=window_ms),
        idle_timeout=idle_timeout,
        drain_timeout=drain_timeout,
        eviction_delay=eviction_delay,
    )
    return Harness(manager, sessions, hub, persistence, snapshots, transcriber)


async def settle():
    await asyncio.sleep(0.01)


async def feed(manager, call_id, count, start_hint=1):
    for hint in range(start_hint, start_hint + count):
        await manager.ingest_frame(AudioFrame(call_id=call_id, payload=FRAME, sequence_hint=hint))
    await settle()


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_out_of_order_completion_example():
    """Chunks finishing as 1, 0, 2 still read 'hello world today'."""
    h = make_harness(GatedTranscriber({0: "hello", 1: "world", 2: "today"}))
    await h.manager.start("call-123", {})
    await feed(h.manager, "call-123", 3)

    h.transcriber.release(1)
    await settle()
    assert h.manager.get_snapshot("call-123")["transcription"] == ""

    h.transcriber.release(0)
    await settle()
    assert h.manager.get_snapshot("call-123")["transcription"] == "hello world"

    h.transcriber.release(2)
    final = await h.manager.stop("call-123")

    assert final["transcription"] == "hello world today"
    assert final["status"] == "completed"
    await h.manager.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(8))
async def test_transcript_is_in_sequence_order_for_any_completion_order(seed):
    count = 6
    order = list(range(count))
    random.Random(seed).shuffle(order)

    h = make_harness()
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)
    await feed(h.manager, "CA1", count)

    stopping = asyncio.create_task(h.manager.stop("CA1"))
    for seq in order:
        h.transcriber.release(seq)
        await settle()
    final = await stopping

    assert final["transcription"] == " ".join(f"w{i}" for i in range(count))
    assert [seg["sequence"] for seg in final["segments"]] == list(range(count))
    assert [m["payload"]["sequence"] for m in recorder.of_type("final_update")] == list(range(count))
    event_ids = [m["event_id"] for m in recorder.messages if m["type"] != "snapshot"]
    assert event_ids == sorted(event_ids)
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_result_below_low_water_mark_is_discarded():
    h = make_harness(GatedTranscriber(auto=True))
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 2)
    assert h.manager.get_snapshot("CA1")["transcription"] == "w0 w1"

    await h.manager.merge_result("CA1", TranscriptionResult(sequence=0, text="bogus"))
    await h.manager.merge_result("CA1", TranscriptionResult(sequence=1, text="bogus", is_final=False))

    snap = h.manager.get_snapshot("CA1")
    assert snap["transcription"] == "w0 w1"
    assert snap["partials"] == []
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_duplicate_held_result_is_ignored():
    h = make_harness()
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 2)

    await h.manager.merge_result("CA1", TranscriptionResult(sequence=1, text="first"))
    await h.manager.merge_result("CA1", TranscriptionResult(sequence=1, text="second"))
    await h.manager.merge_result("CA1", TranscriptionResult(sequence=0, text="zero"))

    assert h.manager.get_snapshot("CA1")["transcription"] == "zero first"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_partial_revisions_never_leak_into_transcript():
    h = make_harness()
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)
    await feed(h.manager, "CA1", 1)

    await h.manager.merge_result("CA1", TranscriptionResult(sequence=0, text="hel", is_final=False))
    await h.manager.merge_result("CA1", TranscriptionResult(sequence=0, text="hello wor", is_final=False))

    snap = h.manager.get_snapshot("CA1")
    assert snap["transcription"] == ""
    assert snap["partials"][0]["text"] == "hello wor"
    assert snap["partials"][0]["revision"] == 1

    await h.manager.merge_result("CA1", TranscriptionResult(sequence=0, text="hello world"))

    snap = h.manager.get_snapshot("CA1")
    assert snap["transcription"] == "hello world"
    assert snap["partials"] == []
    assert len(snap["segments"]) == 1
    assert [m["payload"]["text"] for m in recorder.of_type("partial_update")] == ["hel", "hello wor"]
    assert len(recorder.of_type("final_update")) == 1

    # the gated provider call for seq 0 now lands below the mark
    h.transcriber.release(0)
    await settle()
    assert h.manager.get_snapshot("CA1")["transcription"] == "hello world"
    await h.manager.shutdown()


# ---------------------------------------------------------------------------
# Degradation and failure
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_chunk_leaves_placeholder_and_degrades():
    texts = {0: "one", 1: "two", 2: "three", 3: "four", 4: "five"}
    h = make_harness(GatedTranscriber(texts, errors={2}, auto=True))
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)
    await feed(h.manager, "CA1", 5)

    final = await h.manager.stop("CA1")

    assert final["status"] == "completed"
    assert final["transcription"] == "one two four five"
    assert final["degraded"] is True
    assert final["error_count"] == 1
    assert [seg["text"] for seg in final["segments"]] == ["one", "two", "", "four", "five"]
    assert final["segments"][2]["placeholder"] is True
    assert recorder.of_type("final_update")[2]["payload"]["error"]
    assert recorder.of_type("completed")[0]["payload"]["degraded"] is True
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_transcriber_exception_is_contained():
    class Exploding:
        async def transcribe(self, chunk):
            raise RuntimeError("boom")

    h = make_harness(Exploding())
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 1)

    snap = h.manager.get_snapshot("CA1")
    assert snap["status"] == "active"
    assert snap["degraded"] is True
    assert snap["segments"][0]["placeholder"] is True
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_decode_error_fails_session():
    h = make_harness()
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)

    await h.manager.ingest_frame(AudioFrame(call_id="CA1", payload="%%% not audio %%%"))
    await h.snapshots.drain()

    snap = h.manager.get_snapshot("CA1")
    assert snap["status"] == "failed"
    assert snap["failure_reason"] == "decode_error"
    failed = recorder.of_type("failed")[0]["payload"]
    assert failed["reason"] == "decode_error"
    assert failed["error"]["code"] == "E_DECODE_FAILED"
    assert failed["error"]["recoverable"] is False
    assert h.persistence.failures == [("CA1", "decode_error")]
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_empty_frame_fails_session():
    h = make_harness()
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 1)

    await h.manager.ingest_frame(AudioFrame(call_id="CA1", payload="", sequence_hint=5))

    snap = h.manager.get_snapshot("CA1")
    assert snap["status"] == "failed"
    assert snap["failure_reason"] == "decode_error"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_abort_fails_and_cancels_in_flight_chunks():
    h = make_harness()
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 2)

    snap = await h.manager.abort("CA1")
    await settle()

    assert snap["status"] == "failed"
    assert snap["failure_reason"] == "aborted"
    h.transcriber.release(0, 1)
    await settle()
    assert h.manager.get_snapshot("CA1")["transcription"] == ""
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_idle_timeout_fails_once():
    h = make_harness(idle_timeout=0.05)
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)
    await feed(h.manager, "CA1", 1)

    await asyncio.sleep(0.2)
    await h.snapshots.drain()

    snap = h.manager.get_snapshot("CA1")
    assert snap["status"] == "failed"
    assert snap["failure_reason"] == "idle_timeout"
    assert h.persistence.failures == [("CA1", "idle_timeout")]
    assert len(recorder.of_type("failed")) == 1
    assert recorder.of_type("failed")[0]["payload"]["error"]["code"] == "E_IDLE_TIMEOUT"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_frames_keep_session_alive():
    h = make_harness(GatedTranscriber(auto=True), idle_timeout=0.08)
    await h.manager.start("CA1", {})
    for hint in range(1, 6):
        await h.manager.ingest_frame(AudioFrame(call_id="CA1", payload=FRAME, sequence_hint=hint))
        await asyncio.sleep(0.03)

    assert h.manager.get_snapshot("CA1")["status"] == "active"
    await h.manager.shutdown()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_frame_activates_and_persists_initial_record():
    h = make_harness(GatedTranscriber(auto=True))
    recorder = Recorder()
    await h.manager.start("CA1", {"stream_sid": "MZ1"})
    await h.manager.subscribe("CA1", "rec", recorder.send)
    assert h.manager.get_snapshot("CA1")["status"] == "pending"

    await feed(h.manager, "CA1", 1)
    await h.snapshots.drain()

    assert h.manager.get_snapshot("CA1")["status"] == "active"
    started = recorder.of_type("started")
    assert len(started) == 1
    assert started[0]["payload"]["metadata"] == {"stream_sid": "MZ1"}
    assert h.persistence.rows["CA1"]["status"] == "active"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_start_twice_returns_existing_session():
    h = make_harness(GatedTranscriber(auto=True))
    await h.manager.start("CA1", {"a": 1})
    await feed(h.manager, "CA1", 1)

    again = await h.manager.start("CA1", {"b": 2})

    assert again["status"] == "active"
    assert again["metadata"] == {"a": 1}
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_stop_flushes_buffered_audio_and_drains():
    h = make_harness(window_ms=40)
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 3)
    assert h.transcriber.seen == [0]

    stopping = asyncio.create_task(h.manager.stop("CA1"))
    await settle()
    assert h.transcriber.seen == [0, 1]
    assert not stopping.done()

    h.transcriber.release(0, 1)
    final = await stopping

    assert final["status"] == "completed"
    assert final["transcription"] == "w0 w1"
    assert final["ended_at"] is not None
    await h.snapshots.drain()
    assert h.persistence.rows["CA1"]["status"] == "completed"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_non_final_result_is_committed_when_chunk_returns():
    h = make_harness(PartialOnlyTranscriber(), idle_timeout=0.2)
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)
    await feed(h.manager, "CA1", 2)

    final = await asyncio.wait_for(h.manager.stop("CA1"), 2.0)

    assert final["status"] == "completed"
    assert final["transcription"] == "hel0 hel1"
    assert final["partials"] == []
    assert not final["degraded"]
    assert [m["payload"]["sequence"] for m in recorder.of_type("partial_update")] == [0, 1]
    assert [m["payload"]["sequence"] for m in recorder.of_type("final_update")] == [0, 1]
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_stop_fails_session_when_chunks_never_return():
    h = make_harness(drain_timeout=0.05)
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)
    await feed(h.manager, "CA1", 1)

    final = await asyncio.wait_for(h.manager.stop("CA1"), 2.0)
    await h.snapshots.drain()

    assert final["status"] == "failed"
    assert final["failure_reason"] == "drain_timeout"
    assert h.persistence.failures == [("CA1", "drain_timeout")]
    assert recorder.of_type("failed")[0]["payload"]["error"]["code"] == "E_IDLE_TIMEOUT"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_final_frame_ends_stream():
    h = make_harness(GatedTranscriber(auto=True))
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 2)

    await h.manager.ingest_frame(AudioFrame(call_id="CA1", payload="", is_final_frame=True))

    assert h.manager.get_snapshot("CA1")["status"] == "completed"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_stop_pending_session_completes_empty():
    h = make_harness()
    await h.manager.start("CA1", {})

    final = await h.manager.stop("CA1")

    assert final["status"] == "completed"
    assert final["transcription"] == ""
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_stop_unknown_call_returns_none():
    h = make_harness()
    assert await h.manager.stop("nope") is None
    assert await h.manager.abort("nope") is None


@pytest.mark.asyncio
async def test_late_frames_for_terminal_session_are_ignored():
    h = make_harness(GatedTranscriber(auto=True))
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 2)
    before = await h.manager.stop("CA1")

    await feed(h.manager, "CA1", 3, start_hint=10)
    await h.manager.ingest_frame(AudioFrame(call_id="CA1", payload="garbage!"))
    await h.manager.merge_result("CA1", TranscriptionResult(sequence=2, text="late"))

    assert h.manager.get_snapshot("CA1") == before
    assert h.transcriber.seen == [0, 1]
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_frames_for_unknown_call_do_not_create_sessions():
    h = make_harness()
    await h.manager.ingest_frame(AudioFrame(call_id="ghost", payload=FRAME))
    assert "ghost" not in h.sessions


@pytest.mark.asyncio
async def test_duplicate_sequence_hint_is_dropped():
    h = make_harness()
    await h.manager.start("CA1", {})
    for _ in range(3):
        await h.manager.ingest_frame(AudioFrame(call_id="CA1", payload=FRAME, sequence_hint=7))
    await settle()

    assert h.transcriber.seen == [0]
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_terminal_session_is_evicted_after_persisting():
    h = make_harness(GatedTranscriber(auto=True), eviction_delay=0)
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 1)
    await h.manager.stop("CA1")
    await settle()

    assert h.manager.get_snapshot("CA1") is None
    assert h.persistence.rows["CA1"]["status"] == "completed"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_list_active_excludes_terminal_sessions():
    h = make_harness(GatedTranscriber(auto=True))
    await h.manager.start("CA1", {})
    await h.manager.start("CA2", {})
    await h.manager.stop("CA2")

    active = h.manager.list_active()

    assert [s["call_id"] for s in active] == ["CA1"]
    assert active[0]["status"] == "pending"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_independent_managers_share_nothing():
    a = make_harness(GatedTranscriber(auto=True))
    b = make_harness(GatedTranscriber(auto=True))
    await a.manager.start("CA1", {})
    await feed(a.manager, "CA1", 1)

    assert b.manager.get_snapshot("CA1") is None
    await b.manager.ingest_frame(AudioFrame(call_id="CA1", payload=FRAME))
    assert a.manager.get_snapshot("CA1")["transcription"] == "w0"
    await a.manager.shutdown()


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_late_subscriber_gets_snapshot_then_live_segments():
    h = make_harness()
    await h.manager.start("CA1", {})
    await feed(h.manager, "CA1", 3)
    h.transcriber.release(0, 1, 2)
    await settle()

    recorder = Recorder()
    assert await h.manager.subscribe("CA1", "late", recorder.send) is True

    await feed(h.manager, "CA1", 1, start_hint=4)
    h.transcriber.release(3)
    await settle()

    kinds = [m["type"] for m in recorder.messages]
    assert kinds == ["snapshot", "final_update"]
    snapshot = recorder.messages[0]["payload"]
    assert [seg["sequence"] for seg in snapshot["segments"]] == [0, 1, 2]
    assert recorder.messages[1]["payload"]["sequence"] == 3
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_session():
    h = make_harness(GatedTranscriber(auto=True))
    good = Recorder()

    async def broken(message):
        if message["type"] != "snapshot":
            raise ConnectionError("closed")

    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "broken", broken)
    await h.manager.subscribe("CA1", "good", good.send)
    await feed(h.manager, "CA1", 2)

    assert h.hub.subscriber_count("CA1") == 1
    assert len(good.of_type("final_update")) == 2
    assert h.manager.get_snapshot("CA1")["transcription"] == "w0 w1"
    await h.manager.shutdown()


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent():
    h = make_harness()
    recorder = Recorder()
    await h.manager.start("CA1", {})
    await h.manager.subscribe("CA1", "rec", recorder.send)

    h.manager.unsubscribe("CA1", "rec")
    h.manager.unsubscribe("CA1", "rec")

    await feed(h.manager, "CA1", 1)
    assert recorder.of_type("started") == []
    await h.manager.shutdown()
