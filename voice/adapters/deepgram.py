"""
Deepgram live transcription over the streaming websocket API.

Audio is pushed fire-and-forget into an outbound queue drained by a
sender task; a receiver task turns `Results` messages into interim and
final TranscriptEvents. Connection setup is retried with backoff and
then surfaced as StageUnavailable.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional
from urllib.parse import urlencode

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from config.settings import ProviderConfig
from models.schemas import TranscriptEvent
from voice.adapters.base import TranscriptionAdapter
from voice.errors import ConnectionClosed as StreamClosed
from voice.errors import StageUnavailable

logger = structlog.get_logger()

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


class DeepgramTranscriptionAdapter(TranscriptionAdapter):
    provider = "deepgram"

    def __init__(
        self,
        config: ProviderConfig,
        sample_rate: int = 16000,
        connect_timeout_s: float = 5.0,
        queue_size: int = 200,
    ):
        super().__init__()
        self.config = config
        self.sample_rate = sample_rate
        self.connect_timeout_s = connect_timeout_s
        self.session_id = ""
        self._ws: Optional[ClientConnection] = None
        self._outbound: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=queue_size)
        self._sender: Optional[asyncio.Task] = None
        self._receiver: Optional[asyncio.Task] = None
        self._utterance_started: Optional[float] = None

    def _listen_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "language": "en-US",
            "encoding": "linear16",
            "sample_rate": str(self.sample_rate),
            "channels": "1",
            "smart_format": "true",
            "interim_results": "true",
            "endpointing": "300",
            "utterance_end_ms": "1000",
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        retry=retry_if_exception_type((OSError, asyncio.TimeoutError, WebSocketException)),
        reraise=True,
    )
    async def _open(self) -> ClientConnection:
        return await asyncio.wait_for(
            connect(
                self._listen_url(),
                additional_headers={"Authorization": f"Token {self.config.deepgram_api_key}"},
                max_size=16 * 1024 * 1024,
                ping_interval=20,
                ping_timeout=10,
            ),
            timeout=self.connect_timeout_s,
        )

    async def connect(self, session_id: str) -> None:
        self.session_id = session_id
        try:
            self._ws = await self._open()
        except InvalidStatus as e:
            status = e.response.status_code
            logger.error("deepgram_connect_rejected", session_id=session_id, status=status)
            raise StageUnavailable(f"Deepgram rejected connection (HTTP {status})", "transcription") from e
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("deepgram_connect_failed", session_id=session_id, error=str(e))
            raise StageUnavailable(f"Deepgram connection failed: {e}", "transcription") from e

        self._connected = True
        self._sender = asyncio.create_task(self._send_loop())
        self._receiver = asyncio.create_task(self._receive_loop())
        logger.info("deepgram_connected", session_id=session_id, model=self.config.deepgram_model)

    def send_audio(self, frame: bytes) -> None:
        if not self.connected:
            return
        if self._outbound.full():
            self._outbound.get_nowait()
            logger.debug("deepgram_outbound_frame_dropped", session_id=self.session_id)
        self._outbound.put_nowait(frame)

    async def _send_loop(self) -> None:
        try:
            while True:
                frame = await self._outbound.get()
                if frame is None:
                    break
                await self._ws.send(frame)
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd else None
            logger.warning("deepgram_send_closed", session_id=self.session_id, code=code)
            self._report_closed(StreamClosed(f"Deepgram stream closed (code {code})", "transcription"))

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.debug("deepgram_unparseable_message", session_id=self.session_id)
                    continue
                event = self._parse_result(data)
                if event is not None:
                    self._emit(event)
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd else None
            logger.info("deepgram_stream_closed", session_id=self.session_id, code=code)
            self._report_closed(StreamClosed(f"Deepgram stream closed (code {code})", "transcription"))
            return
        self._report_closed(StreamClosed("Deepgram stream ended", "transcription"))

    def _parse_result(self, data: dict[str, Any]) -> Optional[TranscriptEvent]:
        if data.get("type") != "Results":
            return None
        alternatives = data.get("channel", {}).get("alternatives", [])
        if not alternatives:
            return None
        text = (alternatives[0].get("transcript") or "").strip()
        if not text:
            return None

        now = time.monotonic()
        if self._utterance_started is None:
            self._utterance_started = now
        latency_ms = (now - self._utterance_started) * 1000
        is_final = bool(data.get("is_final", False))
        if is_final:
            self._utterance_started = None

        logger.debug("deepgram_transcript", session_id=self.session_id, is_final=is_final, preview=text[:50])
        return TranscriptEvent(
            text=text,
            is_final=is_final,
            confidence=float(alternatives[0].get("confidence") or 0.0),
            latency_ms=latency_ms,
        )

    async def _close(self) -> None:
        if self._sender is not None:
            self._sender.cancel()
        if self._ws is not None:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except ConnectionClosed:
                logger.debug("deepgram_already_closed", session_id=self.session_id)
            await self._ws.close()
        tasks = [t for t in (self._sender, self._receiver) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("deepgram_disconnected", session_id=self.session_id)
