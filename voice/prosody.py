"""
Prosody hints for synthesis, derived from the classified tone.
"""
from __future__ import annotations

from models.schemas import ProsodyHints, Tone, ToneEmotion

URGENT_SPEED = 1.1
CALMING_SPEED = 0.9

_CALMING = {ToneEmotion.FRUSTRATED, ToneEmotion.ANGRY, ToneEmotion.CONFUSED}


def prosody_for_tone(tone: Tone, enabled: bool = True) -> ProsodyHints:
    """Urgent callers get a slightly faster reply; upset or confused ones a slower, calmer one."""
    if not enabled:
        return ProsodyHints()
    if tone.emotion == ToneEmotion.URGENT:
        return ProsodyHints(speed=URGENT_SPEED, emotion=tone.emotion)
    if tone.emotion in _CALMING:
        return ProsodyHints(speed=CALMING_SPEED, emotion=tone.emotion)
    return ProsodyHints(speed=1.0, emotion=tone.emotion)
