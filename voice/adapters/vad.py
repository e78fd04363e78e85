"""
Energy-based voice activity detection over PCM16 frames.

Normalized RMS is smoothed across frames; a short hangover keeps the
speaking state through brief dips between words.
"""
from __future__ import annotations

import structlog

from models.schemas import VADResult
from voice.adapters.base import VADAdapter
from voice.audio import frame_rms

logger = structlog.get_logger()


class EnergyVADAdapter(VADAdapter):
    provider = "energy"

    def __init__(self, threshold: float = 0.02, smoothing: float = 0.5, hangover_frames: int = 5):
        self.threshold = threshold
        self.smoothing = smoothing
        self.hangover_frames = hangover_frames
        self._level = 0.0
        self._hangover = 0

    async def process(self, frame: bytes) -> VADResult:
        rms = frame_rms(frame)
        self._level = self.smoothing * self._level + (1 - self.smoothing) * rms

        # 0.5 at the threshold, saturating at twice the threshold
        confidence = min(1.0, self._level / (2 * self.threshold)) if self.threshold > 0 else 1.0

        if self._level >= self.threshold:
            self._hangover = self.hangover_frames
            return VADResult(speaking=True, confidence=confidence)
        if self._hangover > 0:
            self._hangover -= 1
            return VADResult(speaking=True, confidence=confidence)
        return VADResult(speaking=False, confidence=1.0 - confidence)
