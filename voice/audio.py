"""
Audio plumbing: the bounded inbound frame buffer and PCM16 helpers.

Inbound audio is single-producer (transport) / single-consumer (VAD +
transcription pump). The buffer never blocks the producer: when full the
oldest frame is discarded and the drop is reported to the caller.
"""
from __future__ import annotations

import asyncio
import base64
from typing import Optional

import numpy as np


# ══════════════════════════════════════════════════════════════
#  FRAME BUFFER
# ══════════════════════════════════════════════════════════════

class AudioFrameBuffer:
    """Bounded ring buffer of PCM frames with drop-oldest overflow."""

    def __init__(self, capacity: int = 200):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=capacity)
        self.dropped_frames: int = 0
        self.total_frames: int = 0
        self._closed = False

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, frame: bytes) -> bool:
        """
        Enqueue without blocking. Returns False when an older frame had
        to be dropped to make room.
        """
        if self._closed:
            return True
        self.total_frames += 1
        dropped = False
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped_frames += 1
            dropped = True
        self._queue.put_nowait(frame)
        return not dropped

    async def get(self) -> Optional[bytes]:
        """Next frame, or None once the buffer is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped_frames += 1
        self._queue.put_nowait(None)


# ══════════════════════════════════════════════════════════════
#  PCM16 HELPERS
# ══════════════════════════════════════════════════════════════

def pcm16_to_float(frame: bytes) -> np.ndarray:
    """Little-endian PCM16 bytes to float32 samples in [-1, 1)."""
    usable = len(frame) - (len(frame) % 2)
    return np.frombuffer(frame[:usable], dtype="<i2").astype(np.float32) / 32768.0


def frame_rms(frame: bytes) -> float:
    samples = pcm16_to_float(frame)
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples ** 2) + 1e-12))


def pcm16_duration_ms(byte_count: int, sample_rate: int, channels: int = 1) -> float:
    if sample_rate <= 0:
        return 0.0
    return byte_count / (2 * channels) / sample_rate * 1000


def encode_audio(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_audio(data: str) -> bytes:
    return base64.b64decode(data)
