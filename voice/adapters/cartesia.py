"""
Cartesia Sonic synthesis over the HTTP bytes endpoint, streamed as raw
PCM16 chunks. The last chunk of each utterance is marked flushed.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from config.settings import ProviderConfig
from models.schemas import AudioChunk, ProsodyHints, SynthesisRequest
from voice.adapters.base import AudioStream, SynthesisAdapter
from voice.adapters.http import HTTPAdapterMixin

logger = structlog.get_logger()

CARTESIA_VERSION = "2024-06-10"
CHUNK_BYTES = 4800                  # 100ms of PCM16 mono at 24kHz

_EMOTION_CONTROLS = {
    "happy": ["positivity:high"],
    "grateful": ["positivity"],
    "frustrated": ["sadness:low"],
    "angry": ["sadness:low"],
    "concerned": ["sadness:low"],
    "confused": ["curiosity"],
    "urgent": ["surprise:low"],
}


def _speed_control(speed: float) -> Optional[str]:
    if speed > 1.05:
        return "fast"
    if speed < 0.95:
        return "slow"
    return None


class CartesiaSynthesisAdapter(HTTPAdapterMixin, SynthesisAdapter):
    provider = "cartesia"
    stage = "synthesis"

    def __init__(
        self,
        config: ProviderConfig,
        sample_rate: int = 24000,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = config.cartesia_model
        self.voice_id = config.cartesia_voice_id
        self.sample_rate = sample_rate
        self._init_http(
            config.cartesia_base_url,
            {"X-API-Key": config.cartesia_api_key, "Cartesia-Version": CARTESIA_VERSION},
            timeout_s,
            transport,
        )

    def _voice(self, voice_id: str, prosody: ProsodyHints) -> dict[str, Any]:
        voice: dict[str, Any] = {"mode": "id", "id": voice_id or self.voice_id}
        controls: dict[str, Any] = {}
        if speed := _speed_control(prosody.speed):
            controls["speed"] = speed
        if prosody.emotion is not None and prosody.emotion.value in _EMOTION_CONTROLS:
            controls["emotion"] = _EMOTION_CONTROLS[prosody.emotion.value]
        if controls:
            voice["__experimental_controls"] = controls
        return voice

    def _body(self, request: SynthesisRequest) -> dict[str, Any]:
        return {
            "model_id": self.model,
            "transcript": request.text,
            "voice": self._voice(request.voice_id, request.prosody),
            "output_format": {
                "container": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": self.sample_rate,
            },
            "language": "en",
        }

    def stream(self, request: SynthesisRequest) -> AudioStream:
        return AudioStream(lambda s: self._chunks(request), provider=self.provider, model=self.model)

    async def _chunks(self, request: SynthesisRequest):
        client = await self._get_client()
        try:
            async with client.stream("POST", "/tts/bytes", json=self._body(request)) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()
                # Hold one chunk back so the terminal one can be marked flushed
                pending: Optional[bytes] = None
                async for data in response.aiter_bytes(chunk_size=CHUNK_BYTES):
                    if pending is not None:
                        yield self._chunk(pending, flushed=False)
                    pending = data
                if pending is not None:
                    yield self._chunk(pending, flushed=True)
        except httpx.HTTPError as e:
            raise self._map_error(e) from e
        logger.debug("cartesia_synthesis_complete", chars=len(request.text))

    def _chunk(self, data: bytes, flushed: bool) -> AudioChunk:
        return AudioChunk(data=data, format="pcm16", sample_rate=self.sample_rate, flushed=flushed)
