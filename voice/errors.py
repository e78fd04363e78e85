"""
Voice pipeline errors.

Stage-local failures are recorded on the turn's metrics and surfaced as
`error` events; only ConnectionClosed is allowed to end a session.
"""
from __future__ import annotations


class VoiceError(Exception):
    """Base exception for all voice pipeline operations."""

    def __init__(self, message: str, stage: str = "", retryable: bool = False):
        self.stage = stage
        self.retryable = retryable
        super().__init__(message)

    def describe(self) -> str:
        prefix = f"{self.stage}: " if self.stage else ""
        return f"{prefix}{self}"


class StageTimeout(VoiceError):
    def __init__(self, stage: str, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(f"{stage} timed out after {timeout_s:.2f}s", stage, retryable=True)


class StageUnavailable(VoiceError):
    def __init__(self, message: str, stage: str = ""):
        super().__init__(message, stage, retryable=True)


class ClassificationDegraded(VoiceError):
    def __init__(self, message: str):
        super().__init__(message, "classification")


class GenerationFailure(VoiceError):
    def __init__(self, message: str):
        super().__init__(message, "generation")


class SynthesisFailure(VoiceError):
    def __init__(self, message: str):
        super().__init__(message, "synthesis")


class BufferOverflow(VoiceError):
    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"Audio input queue full ({capacity} frames), oldest frame dropped", "audio")


class ConnectionClosed(VoiceError):
    def __init__(self, message: str = "Client connection closed", stage: str = "transport"):
        super().__init__(message, stage)


class TurnCancelled(Exception):
    """Raised inside a turn when its cancellation token is set. Never surfaced."""

    def __init__(self, stage: str = ""):
        self.stage = stage
        super().__init__(f"Turn cancelled{f' during {stage}' if stage else ''}")


_STAGE_FAILURES = {
    "classification": ClassificationDegraded,
    "generation": GenerationFailure,
    "synthesis": SynthesisFailure,
}


def failure_for_stage(stage: str):
    """Exception class used when a stage fails for a non-timeout reason."""
    return _STAGE_FAILURES.get(stage, lambda message: VoiceError(message, stage))
