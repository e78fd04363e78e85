"""
Output events sent to the client, one JSON object per message.

Per turn the order is transcript (interim*, final) -> classification ->
response -> audio_chunk*. `error` may appear at any point and never ends
the session; `connected` is sent once when the session starts.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import structlog

from models.schemas import AudioChunk, ClassificationResult, DialogueResponse, TranscriptEvent, utcnow
from voice.audio import encode_audio

logger = structlog.get_logger()


def _ts(value: Optional[datetime] = None) -> str:
    return (value or utcnow()).isoformat()


def connected_event(conversation_id: str) -> dict[str, Any]:
    return {"type": "connected", "conversationId": conversation_id, "timestamp": _ts()}


def transcript_event(transcript: TranscriptEvent) -> dict[str, Any]:
    return {
        "type": "transcript",
        "text": transcript.text,
        "is_final": transcript.is_final,
        "confidence": transcript.confidence,
        "timestamp": _ts(transcript.timestamp),
    }


def classification_event(result: ClassificationResult) -> dict[str, Any]:
    return {
        "type": "classification",
        "intent": result.intent.type.value,
        "entities": result.intent.entities,
        "emotion": result.tone.emotion.value,
        "sentiment": result.tone.sentiment.value,
        "urgency": result.tone.urgency_score,
        "politeness": result.tone.politeness_score,
        "confidence": result.intent.confidence,
        "timestamp": _ts(),
    }


def response_event(response: DialogueResponse) -> dict[str, Any]:
    return {
        "type": "response",
        "text": response.text,
        "latency_ms": round(response.latency_ms, 1),
        "model": response.model,
        "timestamp": _ts(),
    }


def audio_chunk_event(chunk: AudioChunk) -> dict[str, Any]:
    return {
        "type": "audio_chunk",
        "data": encode_audio(chunk.data),
        "format": chunk.format,
        "sample_rate": chunk.sample_rate,
        "timestamp": _ts(chunk.timestamp),
    }


def error_event(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message, "timestamp": _ts()}


class EventChannel:
    """
    Unbounded queue of output events with an explicit close.

    Consumers iterate until the channel is closed; anything emitted after
    close() is discarded.
    """

    _CLOSED = object()

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.emitted: int = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: dict[str, Any]) -> None:
        if self._closed:
            logger.debug("event_after_close_dropped", session_id=self.session_id, event_type=event.get("type"))
            return
        self.emitted += 1
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def drain(self) -> list[dict[str, Any]]:
        """Everything currently queued, without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is self._CLOSED:
                # Keep the close marker for iterators
                self._queue.put_nowait(item)
                break
            events.append(item)
        return events

    async def get(self) -> Optional[dict[str, Any]]:
        """Next event, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is self._CLOSED:
            self._queue.put_nowait(item)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
