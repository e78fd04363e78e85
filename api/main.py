"""
FastAPI Application — voice WebSocket + metrics export.

Provides:
- WebSocket endpoint for live voice sessions (/ws/voice)
- JSON and CSV metrics export
- Active session listing and health
"""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.websockets import WebSocketState
from pydantic import ValidationError

from config.settings import get_settings
from models.schemas import BusinessProfile, ConversationChannel, TranscriptEvent
from voice.conversation import ConversationStateMachine
from voice.errors import VoiceError
from voice.events import error_event
from voice.export import export_csv
from voice.monitoring import VoiceMetricsPublisher
from voice.server import VoiceSessionManager

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()
session_manager = VoiceSessionManager(settings)
metrics_publisher = VoiceMetricsPublisher(
    session_manager.collector,
    publish_interval_s=settings.metrics_publish_interval_s,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await metrics_publisher.start()
    logger.info("voice_orchestrator_started", mode=settings.mode, app_name=settings.app_name)
    yield
    await session_manager.shutdown()
    await metrics_publisher.stop()
    logger.info("voice_orchestrator_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Voice Orchestrator API",
    description="Real-time spoken dialogue orchestrator",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ══════════════════════════════════════════════════════════════
#  HEALTH & METRICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mode": settings.mode,
        "active_sessions": session_manager.active_session_count,
        **metrics_publisher.get_health(),
    }


@app.get("/api/v1/voice/metrics")
async def get_metrics():
    return session_manager.collector.export()


@app.get("/api/v1/voice/metrics.csv")
async def get_metrics_csv():
    return Response(
        content=export_csv(session_manager.collector),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=metrics.csv"},
    )


@app.get("/api/v1/voice/sessions")
async def list_sessions():
    return {"sessions": session_manager.list_sessions(), **session_manager.get_status()}


@app.get("/api/v1/voice/sessions/{conversation_id}")
async def get_session(conversation_id: str):
    session = session_manager.get_session(conversation_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session.snapshot()


# ══════════════════════════════════════════════════════════════
#  VOICE WEBSOCKET
# ══════════════════════════════════════════════════════════════

def _parse_profile(payload: dict[str, Any]) -> Optional[BusinessProfile]:
    raw = payload.get("profile", payload.get("context"))
    if raw is None:
        return None
    return BusinessProfile.model_validate(raw)


async def _handle_control(session: ConversationStateMachine, event: dict[str, Any]) -> bool:
    """Apply one inbound JSON message. Returns False when the client asked to end."""
    kind = event.get("type", "")
    if kind == "setup":
        profile = _parse_profile(event)
        if profile is not None:
            session.update_profile(profile)
    elif kind == "text":
        session.handle_transcript(TranscriptEvent(
            text=str(event.get("text", "")),
            is_final=True,
            confidence=float(event.get("confidence", 1.0)),
        ))
    elif kind == "barge_in":
        session.on_barge_in()
    elif kind == "end":
        return False
    else:
        session.events.emit(error_event(f"Unknown message type: {kind or '<missing>'}"))
    return True


async def _forward_events(websocket: WebSocket, session: ConversationStateMachine) -> None:
    async for event in session.events:
        await websocket.send_text(json.dumps(event, default=str))
    # Channel closed: the session has ended, possibly on its own
    await _close_socket(websocket, session.id)


async def _close_socket(websocket: WebSocket, conversation_id: str) -> None:
    if WebSocketState.DISCONNECTED in (websocket.client_state, websocket.application_state):
        return
    try:
        await websocket.close(code=1000)
    except RuntimeError as e:
        logger.debug("voice_ws_already_closed", conversation_id=conversation_id, error=str(e))


@app.websocket("/ws/voice")
async def voice_websocket(websocket: WebSocket):
    """
    Duplex voice session.

    Client sends binary PCM16 LE frames, plus JSON messages:
      {"type": "setup", "profile": {"name": ..., "amenities": [...], "policies": {...}}}
      {"type": "text", "text": "I need a room"}     # typed input, treated as a final transcript
      {"type": "barge_in"}
      {"type": "end"}
    Server sends the output events, starting with {"type": "connected"}.
    """
    await websocket.accept()
    try:
        channel = ConversationChannel(websocket.query_params.get("channel", ConversationChannel.WEB.value))
    except ValueError:
        channel = ConversationChannel.WEB

    try:
        session = await session_manager.open_session(channel=channel)
    except VoiceError as e:
        logger.error("voice_ws_session_failed", error=e.describe())
        await websocket.send_text(json.dumps(error_event(e.describe())))
        await websocket.close(code=1011, reason="Session start failed")
        return

    sender = asyncio.create_task(_forward_events(websocket, session))
    reason = "client_closed"
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                reason = "client_disconnected"
                break
            if message.get("bytes") is not None:
                session.submit_audio(message["bytes"])
                continue
            try:
                event = json.loads(message.get("text") or "")
            except json.JSONDecodeError:
                event = None
            if not isinstance(event, dict):
                session.events.emit(error_event("Malformed JSON message"))
                continue
            try:
                if not await _handle_control(session, event):
                    reason = "client_ended"
                    break
            except ValidationError as e:
                session.events.emit(error_event(f"Invalid setup payload: {e.error_count()} error(s)"))
            except (TypeError, ValueError) as e:
                session.events.emit(error_event(f"Invalid message: {e}"))

    except WebSocketDisconnect:
        reason = "client_disconnected"
    except Exception as e:
        reason = "transport_error"
        logger.error("voice_ws_error", conversation_id=session.id, error=str(e))
    finally:
        await session_manager.close_session(session.id, reason=reason)
        # The channel is closed now; let the sender flush what was queued
        for result in await asyncio.gather(sender, return_exceptions=True):
            if isinstance(result, Exception):
                logger.warning("voice_ws_send_failed", conversation_id=session.id, error=str(result))
        if reason != "client_disconnected":
            await _close_socket(websocket, session.id)
        logger.info("voice_ws_closed", conversation_id=session.id, reason=reason)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
