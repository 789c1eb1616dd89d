"""FastAPI app — Twilio Media Stream ingestion + live transcript fan-out.

Data flow:
  1. Twilio streams base64 mu-law frames → ``/ws/twilio-media``.
  2. Frames are decoded to PCM-16 and buffered into 5 s chunks.
  3. Each chunk → STT provider (Deepgram or Whisper) in the background.
  4. Results are merged in sequence order into the session transcript.
  5. Snapshots → Supabase ``call_transcriptions`` (write-behind).
  6. Events → every socket subscribed on ``/ws/transcripts/{call_id}``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from callscribe.audio.accumulator import ChunkAccumulator
from callscribe.audio.decoder import AudioFrameDecoder
from callscribe.audio.stt import TranscriptionClient, build_transcriber
from callscribe.config import Settings, configure_logging, load_env
from callscribe.db import PersistencePort, build_store
from callscribe.errors import ErrorCode, ErrorEnvelope, PersistenceError, SessionNotFoundError, send_error
from callscribe.session.hub import SubscriptionHub
from callscribe.session.manager import SessionManager
from callscribe.session.snapshot_queue import SnapshotQueue
from callscribe.session.store import SessionStore
from callscribe.telemetry import init_telemetry
from callscribe.telephony.twilio_stream import TwilioStreamBridge
from callscribe.utils import generate_connection_id

load_env()
logger = logging.getLogger(__name__)

_SHUTDOWN_FLUSH_TIMEOUT = 10.0


@dataclass
class TranscriptionService:
    """Service root: owns the session table and everything wired to it."""

    settings: Settings
    persistence: PersistencePort
    sessions: SessionStore
    hub: SubscriptionHub
    snapshots: SnapshotQueue
    transcriber: TranscriptionClient
    manager: SessionManager

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        persistence: PersistencePort | None = None,
        transcriber: TranscriptionClient | None = None,
    ) -> "TranscriptionService":
        persistence = persistence if persistence is not None else build_store(settings)
        transcriber = transcriber if transcriber is not None else build_transcriber(settings)
        sessions = SessionStore()
        hub = SubscriptionHub(send_timeout=settings.subscriber_send_timeout)
        snapshots = SnapshotQueue(persistence)
        manager = SessionManager(
            sessions,
            hub,
            transcriber,
            snapshots,
            decoder=AudioFrameDecoder(frame_bytes=settings.frame_bytes),
            accumulator=ChunkAccumulator(window_ms=settings.chunk_window_ms),
            idle_timeout=settings.idle_timeout,
            drain_timeout=settings.drain_timeout,
            eviction_delay=settings.eviction_delay,
        )
        return cls(settings, persistence, sessions, hub, snapshots, transcriber, manager)

    async def close(self) -> None:
        await self.manager.shutdown()
        try:
            await asyncio.wait_for(self.snapshots.drain(), timeout=_SHUTDOWN_FLUSH_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("[Service] Snapshot flush timed out — cancelling pending writes.")
            self.snapshots.cancel_all()


class StartRequest(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)


def create_app(service: TranscriptionService | None = None) -> FastAPI:
    """Build the ASGI app.  Pass *service* to run against injected collaborators."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        init_telemetry()
        if service is not None:
            app.state.service = service
        else:
            settings = Settings.from_env()
            configure_logging(settings.log_level)
            app.state.service = TranscriptionService.build(settings)
            logger.info(
                "[Service] Ready — STT=%s, window=%dms, idle timeout=%.0fs.",
                settings.stt_provider, settings.chunk_window_ms, settings.idle_timeout,
            )

        yield

        await app.state.service.close()

    app = FastAPI(title="callscribe", version="0.1.0", lifespan=lifespan)

    def _service(request: Request) -> TranscriptionService:
        return request.app.state.service

    @app.get("/health")
    async def health(request: Request) -> dict:
        svc = _service(request)
        return {"status": "ok", "active_sessions": len(svc.manager.list_active())}

    @app.post("/calls/{call_id}/transcription/start")
    async def start_transcription(call_id: str, body: StartRequest, request: Request) -> dict:
        snapshot = await _service(request).manager.start(call_id, {**body.metadata, "initiated_by": "api"})
        return {"transcription": snapshot}

    @app.post("/calls/{call_id}/transcription/stop")
    async def stop_transcription(call_id: str, request: Request) -> dict:
        snapshot = await _service(request).manager.stop(call_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="No active transcription found for this call")
        return {"transcription": snapshot}

    @app.post("/calls/{call_id}/transcription/abort")
    async def abort_transcription(call_id: str, request: Request) -> dict:
        snapshot = await _service(request).manager.abort(call_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="No active transcription found for this call")
        return {"transcription": snapshot}

    @app.get("/calls/{call_id}/transcription")
    async def get_transcription(call_id: str, request: Request, include_partial: bool = False) -> dict:
        svc = _service(request)
        snapshot = svc.manager.get_snapshot(call_id)
        if snapshot is not None:
            if not include_partial:
                snapshot.pop("partials", None)
            return {"transcription": {**snapshot, "is_live": True}}

        try:
            row = await svc.persistence.fetch(call_id)
        except PersistenceError as exc:
            logger.warning("[API] Transcript lookup for %s failed: %s", call_id, exc)
            raise HTTPException(status_code=503, detail="Transcript store unavailable") from exc
        if row is None:
            raise HTTPException(status_code=404, detail="No transcription found for this call")
        if not include_partial:
            row.pop("partial_transcriptions", None)
        return {"transcription": {**row, "is_live": False}}

    @app.get("/transcriptions/active")
    async def active_transcriptions(request: Request) -> dict:
        active = _service(request).manager.list_active()
        return {"transcriptions": active, "count": len(active)}

    @app.websocket("/ws/twilio-media")
    async def twilio_media(websocket: WebSocket) -> None:
        await websocket.accept()
        bridge = TwilioStreamBridge(websocket.app.state.service.manager)
        try:
            while True:
                raw = await websocket.receive_text()
                await bridge.handle_raw(raw)
        except WebSocketDisconnect:
            logger.info("[Twilio] Media Stream socket closed (call=%s).", bridge.call_sid)
        finally:
            await bridge.close()

    @app.websocket("/ws/transcripts/{call_id}")
    async def transcript_stream(websocket: WebSocket, call_id: str) -> None:
        await websocket.accept()
        manager: SessionManager = websocket.app.state.service.manager
        handle = generate_connection_id()

        live = manager.get_snapshot(call_id) is not None
        if not await manager.subscribe(call_id, handle, websocket.send_json):
            await websocket.close()
            return
        if not live:
            # subscription stays open; events flow once the call starts
            await send_error(
                websocket,
                ErrorEnvelope.from_exception(
                    SessionNotFoundError(f"No live transcription for {call_id} yet", call_id=call_id)
                ),
            )

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await send_error(
                        websocket,
                        ErrorEnvelope(code=ErrorCode.E_PROTOCOL.value, message="Message is not valid JSON", call_id=call_id),
                    )
                    continue

                msg_type = message.get("type") if isinstance(message, dict) else None
                if msg_type == "ping":
                    await websocket.send_json({"type": "pong", "call_id": call_id})
                elif msg_type == "unsubscribe":
                    manager.unsubscribe(call_id, handle)
                    await websocket.close()
                    return
                else:
                    await send_error(
                        websocket,
                        ErrorEnvelope(code=ErrorCode.E_PROTOCOL.value, message=f"Unknown message type {msg_type!r}", call_id=call_id),
                    )
        except WebSocketDisconnect:
            pass
        finally:
            manager.unsubscribe(call_id, handle)
            logger.info("[Hub] Subscriber %s left %s.", handle, call_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("callscribe.main:app", host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", "8001")))
