"""SessionManager — lifecycle and transcript assembly for live calls.

State machine::

    pending ──first frame──▶ active ──stop + drained──▶ completed
       │                       │
       └──────decode error / idle timeout / abort──────▶ failed

Every mutation of a session happens while holding that session's
``asyncio.Lock``, and the events a mutation produces are broadcast before
the lock is released, so subscribers see one session's events in the order
they were produced.  STT requests run as separate tasks *without* the lock,
which lets audio keep accumulating while earlier chunks are in flight and
means results can come back out of order.

Results are merged with a low-water mark (``next_expected_sequence``):

* ``sequence < mark``  — stale or duplicate, discarded.
* ``sequence == mark`` — committed; the mark advances and any held results
  that are now contiguous are committed after it.
* ``sequence > mark``  — held until the gap closes.

The final transcript is therefore the per-chunk texts in sequence order no
matter which STT response arrived first.  A chunk the provider could not
transcribe is committed as an empty placeholder and marks the session
``degraded``; only decode errors, idle timeouts and explicit aborts fail a
session.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Hashable

from callscribe import constants
from callscribe.analysis.sentiment import analyze_sentiment
from callscribe.audio.accumulator import ChunkAccumulator
from callscribe.audio.decoder import AudioFrameDecoder
from callscribe.audio.stt import TranscriptionClient
from callscribe.errors import (
    AbortError,
    CallscribeError,
    DecodeError,
    ErrorEnvelope,
    IdleTimeoutError,
)
from callscribe.models import (
    AudioChunk,
    AudioFrame,
    EventType,
    FinalSegment,
    PartialSegment,
    SessionEvent,
    SessionState,
    TranscriptionResult,
    TranscriptionSession,
)
from callscribe.session.hub import SendFn, SubscriptionHub
from callscribe.session.snapshot_queue import SnapshotQueue
from callscribe.session.store import SessionStore
from callscribe.telemetry import get_tracer
from callscribe.utils import isoformat, utcnow

logger = logging.getLogger(__name__)
tracer = get_tracer()

_FAILURE_ERRORS: dict[str, type[CallscribeError]] = {
    constants.REASON_IDLE_TIMEOUT: IdleTimeoutError,
    constants.REASON_DECODE_ERROR: DecodeError,
    constants.REASON_DRAIN_TIMEOUT: IdleTimeoutError,
}


class SessionManager:
    """Owns every ``TranscriptionSession`` held in *store*.

    Parameters
    ----------
    store : SessionStore
        Session table; injected so independent managers never share state.
    hub : SubscriptionHub
        Receives every session event.
    transcriber : TranscriptionClient
        STT adapter; one ``transcribe`` call per chunk.
    snapshots : SnapshotQueue
        Write-behind persistence for session snapshots.
    idle_timeout : float
        Seconds without frames before a session fails with ``idle_timeout``
        (0 disables the watchdog).
    drain_timeout : float
        Seconds a stopped session may wait for in-flight chunks before it
        fails with ``drain_timeout`` (0 waits indefinitely).
    eviction_delay : float
        Seconds a terminal session stays in *store* after it is persisted.
    """

    def __init__(
        self,
        store: SessionStore,
        hub: SubscriptionHub,
        transcriber: TranscriptionClient,
        snapshots: SnapshotQueue,
        *,
        decoder: AudioFrameDecoder | None = None,
        accumulator: ChunkAccumulator | None = None,
        idle_timeout: float = constants.SESSION_IDLE_TIMEOUT,
        drain_timeout: float = constants.SESSION_DRAIN_TIMEOUT,
        eviction_delay: float = constants.SESSION_EVICTION_DELAY,
    ) -> None:
        self._store = store
        self._hub = hub
        self._transcriber = transcriber
        self._snapshots = snapshots
        self._decoder = decoder or AudioFrameDecoder()
        self._accumulator = accumulator or ChunkAccumulator()
        self._idle_timeout = idle_timeout
        self._drain_timeout = drain_timeout
        self._eviction_delay = eviction_delay

        self._chunk_tasks: dict[str, set[asyncio.Task]] = {}
        self._watchdogs: dict[str, asyncio.Task] = {}
        self._evictions: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Control signals
    # ------------------------------------------------------------------

    async def start(self, call_id: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """Open a ``pending`` session for *call_id*.

        Starting a call that already has a session returns that session's
        snapshot unchanged.
        """
        existing = self._store.get(call_id)
        if existing is not None:
            logger.info("[Session] %s already %s — start ignored.", call_id, existing.state.value)
            return existing.snapshot()

        session = self._store.create(call_id, metadata)
        session.last_activity = self._now()
        self._arm_watchdog(call_id)
        logger.info("[Session] %s pending (metadata keys: %s).", call_id, sorted(session.metadata))
        return session.snapshot()

    async def stop(self, call_id: str) -> dict[str, Any] | None:
        """Signal stream end and wait for the session to reach a terminal state.

        Buffered audio is flushed as a last chunk; the session completes once
        every dispatched chunk has been merged.  Returns the final snapshot,
        or None for an unknown call.
        """
        session = self._store.get(call_id)
        if session is None:
            logger.warning("[Session] stop for unknown call %s ignored.", call_id)
            return None

        async with session.lock:
            if not session.state.is_terminal and not session.stream_ended:
                session.stream_ended = True
                self._arm_drain_deadline(call_id)
                if session.state is SessionState.ACTIVE:
                    chunk = self._accumulator.flush(call_id)
                    if chunk is not None:
                        self._dispatch_locked(session, chunk)
                logger.info("[Session] Stream end for %s — %d chunk(s) in flight.", call_id, session.in_flight)
            await self._maybe_complete_locked(session)

        await session.finished.wait()
        return session.snapshot()

    async def abort(self, call_id: str, reason: str = constants.REASON_ABORTED) -> dict[str, Any] | None:
        """Fail a live session immediately."""
        session = self._store.get(call_id)
        if session is None:
            logger.warning("[Session] abort for unknown call %s ignored.", call_id)
            return None

        async with session.lock:
            if not session.state.is_terminal:
                await self._fail_locked(session, reason)
        return session.snapshot()

    # ------------------------------------------------------------------
    # Audio path
    # ------------------------------------------------------------------

    async def ingest_frame(self, frame: AudioFrame) -> None:
        """Feed one telephony frame.  Never raises."""
        try:
            await self._ingest(frame)
        except Exception as exc:
            logger.error("[Session] Unexpected error ingesting frame for %s: %s", frame.call_id, exc, exc_info=True)
            await self.abort(frame.call_id, reason=f"internal_error: {exc}")

    async def _ingest(self, frame: AudioFrame) -> None:
        call_id = frame.call_id
        session = self._store.get(call_id)
        if session is None:
            logger.warning("[Session] Frame for unknown call %s dropped.", call_id)
            return

        async with session.lock:
            if session.state.is_terminal:
                logger.debug("[Session] Late frame for %s call %s dropped.", session.state.value, call_id)
                return
            if session.stream_ended:
                logger.debug("[Session] Frame after stream end for %s dropped.", call_id)
            elif frame.payload or not frame.is_final_frame:
                if not await self._accept_audio_locked(session, frame):
                    return

        if frame.is_final_frame:
            await self.stop(call_id)

    async def _accept_audio_locked(self, session: TranscriptionSession, frame: AudioFrame) -> bool:
        """Decode and buffer one frame.  Returns False if the session failed."""
        hint = frame.sequence_hint
        if hint is not None and session.last_sequence_hint is not None and hint <= session.last_sequence_hint:
            logger.debug("[Session] Duplicate frame %d for %s dropped.", hint, session.call_id)
            return True

        session.last_activity = self._now()
        try:
            pcm = self._decoder.decode(frame.payload)
        except DecodeError as exc:
            await self._fail_locked(session, constants.REASON_DECODE_ERROR, detail=str(exc))
            return False

        if hint is not None:
            session.last_sequence_hint = hint
        if session.state is SessionState.PENDING:
            await self._activate_locked(session)

        chunk = self._accumulator.push(session.call_id, pcm)
        if chunk is not None:
            self._dispatch_locked(session, chunk)
        return True

    def _dispatch_locked(self, session: TranscriptionSession, chunk: AudioChunk) -> None:
        session.chunks_dispatched = chunk.sequence + 1
        task = asyncio.create_task(self._transcribe_chunk(session.call_id, chunk))
        tasks = self._chunk_tasks.setdefault(session.call_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        logger.debug(
            "[Session] Chunk %s#%d (%.0fms) dispatched; %d in flight.",
            chunk.session_id, chunk.sequence, chunk.duration_ms, session.in_flight,
        )

    async def _transcribe_chunk(self, call_id: str, chunk: AudioChunk) -> None:
        try:
            result = await self._transcriber.transcribe(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[Session] Transcriber raised for %s#%d: %s", call_id, chunk.sequence, exc, exc_info=True)
            result = TranscriptionResult.from_error(chunk.sequence, f"transcriber error: {exc}")

        if result.sequence != chunk.sequence:
            result = dataclasses.replace(result, sequence=chunk.sequence)
        if not result.is_final and not result.failed:
            # No later request covers this chunk, so its last partial becomes the final.
            await self.merge_result(call_id, result)
            result = dataclasses.replace(result, is_final=True)
        await self.merge_result(call_id, result)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    async def merge_result(self, call_id: str, result: TranscriptionResult) -> None:
        """Fold one STT result into the session transcript.  Never raises."""
        session = self._store.get(call_id)
        if session is None:
            logger.warning("[Session] Result %d for unknown call %s discarded.", result.sequence, call_id)
            return

        async with session.lock:
            if session.state.is_terminal:
                logger.debug("[Session] Result %d for %s call %s discarded.", result.sequence, session.state.value, call_id)
                return
            with tracer.start_as_current_span(
                "callscribe.merge",
                attributes={"call.id": call_id, "chunk.sequence": result.sequence, "result.final": result.is_final},
            ):
                try:
                    await self._merge_locked(session, result)
                except Exception as exc:
                    logger.error("[Session] Merge failed for %s#%d: %s", call_id, result.sequence, exc, exc_info=True)
                    await self._fail_locked(session, f"internal_error: {exc}")

    async def _merge_locked(self, session: TranscriptionSession, result: TranscriptionResult) -> None:
        seq = result.sequence
        mark = session.next_expected_sequence

        if seq < mark:
            logger.debug("[Session] Stale result %s#%d below low-water mark %d discarded.", session.call_id, seq, mark)
            return

        if not result.is_final and not result.failed:
            await self._update_partial_locked(session, result)
            return

        if seq > mark:
            if seq in session.held_results:
                logger.debug("[Session] Duplicate final %s#%d discarded.", session.call_id, seq)
                return
            session.held_results[seq] = result
            logger.debug("[Session] Holding %s#%d until %d arrives.", session.call_id, seq, mark)
            return

        await self._commit_locked(session, result)
        while session.next_expected_sequence in session.held_results:
            held = session.held_results.pop(session.next_expected_sequence)
            await self._commit_locked(session, held)

        self._snapshots.submit_save(session.call_id, session.snapshot())
        await self._maybe_complete_locked(session)

    async def _update_partial_locked(self, session: TranscriptionSession, result: TranscriptionResult) -> None:
        seq = result.sequence
        if seq in session.held_results:
            logger.debug("[Session] Partial %s#%d arrived after its final — ignored.", session.call_id, seq)
            return

        previous = session.partial_segments.get(seq)
        partial = PartialSegment(
            sequence=seq,
            text=result.text.strip(),
            revision=previous.revision + 1 if previous is not None else 0,
        )
        session.partial_segments[seq] = partial
        await self._emit(session, EventType.PARTIAL_UPDATE, partial.to_dict())

    async def _commit_locked(self, session: TranscriptionSession, result: TranscriptionResult) -> None:
        text = "" if result.failed else result.text.strip()
        if result.failed:
            session.degraded = True
            session.error_count += 1
            logger.warning(
                "[Session] Chunk %s#%d could not be transcribed (%s) — empty segment committed.",
                session.call_id, result.sequence, result.error,
            )

        segment = FinalSegment(
            sequence=result.sequence,
            text=text,
            confidence=result.confidence,
            sentiment=analyze_sentiment(text),
            placeholder=result.failed,
        )
        session.full_transcript.append(segment)
        session.partial_segments.pop(result.sequence, None)
        session.next_expected_sequence += 1

        payload = segment.to_dict()
        payload.update(
            transcription=session.transcript_text,
            degraded=session.degraded,
            error=result.error,
        )
        await self._emit(session, EventType.FINAL_UPDATE, payload)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _activate_locked(self, session: TranscriptionSession) -> None:
        session.state = SessionState.ACTIVE
        logger.info("[Session] %s active.", session.call_id)
        self._snapshots.submit_save(session.call_id, session.snapshot())
        await self._emit(
            session,
            EventType.STARTED,
            {"started_at": isoformat(session.started_at), "metadata": dict(session.metadata)},
        )

    async def _maybe_complete_locked(self, session: TranscriptionSession) -> None:
        if session.state.is_terminal or not session.stream_ended or session.in_flight > 0:
            return
        await self._finish_locked(session, SessionState.COMPLETED)

    async def _fail_locked(self, session: TranscriptionSession, reason: str, detail: str | None = None) -> None:
        logger.error("[Session] %s failed: %s%s", session.call_id, reason, f" ({detail})" if detail else "")
        current = asyncio.current_task()
        for task in list(self._chunk_tasks.get(session.call_id, ())):
            if task is not current:
                task.cancel()
        await self._finish_locked(session, SessionState.FAILED, reason=reason, detail=detail)

    async def _finish_locked(
        self,
        session: TranscriptionSession,
        state: SessionState,
        *,
        reason: str | None = None,
        detail: str | None = None,
    ) -> None:
        call_id = session.call_id
        session.state = state
        session.ended_at = utcnow()
        session.failure_reason = reason
        session.held_results.clear()
        self._accumulator.reset(call_id)
        self._cancel_watchdog(call_id)

        snapshot = session.snapshot()
        if state is SessionState.COMPLETED:
            self._snapshots.submit_save(call_id, snapshot)
            logger.info(
                "[Session] %s completed: %d segment(s), %ds, degraded=%s.",
                call_id, len(session.full_transcript), session.duration_seconds or 0, session.degraded,
            )
            await self._emit(
                session,
                EventType.COMPLETED,
                {
                    "transcription": session.transcript_text,
                    "started_at": snapshot["started_at"],
                    "ended_at": snapshot["ended_at"],
                    "duration_seconds": session.duration_seconds,
                    "segments": len(session.full_transcript),
                    "degraded": session.degraded,
                    "error_count": session.error_count,
                },
            )
        else:
            failure = _FAILURE_ERRORS.get(reason or "", AbortError)(detail or reason or "", call_id=call_id)
            self._snapshots.submit_failure(call_id, reason or constants.REASON_ABORTED, snapshot)
            await self._emit(
                session,
                EventType.FAILED,
                {
                    "reason": reason,
                    "error": ErrorEnvelope.from_exception(failure).to_dict(),
                    "transcription": session.transcript_text,
                    "degraded": session.degraded,
                    "error_count": session.error_count,
                },
            )

        session.finished.set()
        self._schedule_eviction(call_id)

    async def _emit(self, session: TranscriptionSession, event_type: EventType, payload: dict[str, Any]) -> None:
        event = SessionEvent(event_type, session.call_id, payload, session.next_event_id())
        await self._hub.broadcast(session.call_id, event)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    async def subscribe(self, call_id: str, connection_handle: Hashable, send: SendFn) -> bool:
        """Register a subscriber and send it the current snapshot first.

        Holding the session lock while the snapshot goes out means no event
        can slip between the snapshot and the first live broadcast.
        """
        session = self._store.get(call_id)
        if session is None:
            return await self._hub.subscribe(call_id, connection_handle, send)
        async with session.lock:
            return await self._hub.subscribe(call_id, connection_handle, send, session.snapshot())

    def unsubscribe(self, call_id: str, connection_handle: Hashable) -> None:
        self._hub.unsubscribe(call_id, connection_handle)

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    def get_snapshot(self, call_id: str) -> dict[str, Any] | None:
        session = self._store.get(call_id)
        return session.snapshot() if session is not None else None

    def list_active(self) -> list[dict[str, Any]]:
        return [session.summary() for session in self._store.active()]

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_watchdog(self, call_id: str) -> None:
        if self._idle_timeout <= 0:
            return
        self._watchdogs[call_id] = asyncio.create_task(self._watch_idle(call_id))

    def _cancel_watchdog(self, call_id: str) -> None:
        task = self._watchdogs.pop(call_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _watch_idle(self, call_id: str) -> None:
        while True:
            session = self._store.get(call_id)
            if session is None or session.state.is_terminal or session.stream_ended:
                return

            remaining = self._idle_timeout - (self._now() - session.last_activity)
            if remaining > 0:
                await asyncio.sleep(remaining)
                continue

            async with session.lock:
                if session.state.is_terminal or session.stream_ended:
                    return
                if self._now() - session.last_activity < self._idle_timeout:
                    continue
                logger.warning("[Session] %s idle for %.1fs — failing.", call_id, self._idle_timeout)
                await self._fail_locked(session, constants.REASON_IDLE_TIMEOUT)
            return

    def _arm_drain_deadline(self, call_id: str) -> None:
        self._cancel_watchdog(call_id)
        if self._drain_timeout <= 0:
            return
        self._watchdogs[call_id] = asyncio.create_task(self._watch_drain(call_id))

    async def _watch_drain(self, call_id: str) -> None:
        session = self._store.get(call_id)
        if session is None:
            return
        try:
            await asyncio.wait_for(session.finished.wait(), timeout=self._drain_timeout)
            return
        except asyncio.TimeoutError:
            pass

        async with session.lock:
            if session.state.is_terminal:
                return
            logger.warning(
                "[Session] %s still has %d chunk(s) in flight %.1fs after stream end — failing.",
                call_id, session.in_flight, self._drain_timeout,
            )
            await self._fail_locked(
                session, constants.REASON_DRAIN_TIMEOUT, detail=f"{session.in_flight} chunk(s) never merged"
            )

    def _schedule_eviction(self, call_id: str) -> None:
        if call_id not in self._evictions:
            self._evictions[call_id] = asyncio.create_task(self._evict_later(call_id))

    async def _evict_later(self, call_id: str) -> None:
        try:
            await self._snapshots.wait_idle(call_id)
            await asyncio.sleep(self._eviction_delay)
            self._store.remove(call_id)
            self._hub.close_session(call_id)
            self._chunk_tasks.pop(call_id, None)
        finally:
            self._evictions.pop(call_id, None)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel every timer and in-flight chunk; wake any ``stop`` waiters."""
        tasks: list[asyncio.Task] = [*self._watchdogs.values(), *self._evictions.values()]
        for chunk_tasks in self._chunk_tasks.values():
            tasks.extend(chunk_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchdogs.clear()
        self._evictions.clear()
        self._chunk_tasks.clear()
        for session in self._store:
            session.finished.set()
        logger.info("[Session] Manager shut down (%d task(s) cancelled).", len(tasks))

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()
