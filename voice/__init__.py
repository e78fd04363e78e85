"""
Voice Subsystem — real-time spoken dialogue orchestration.

Modules:
- conversation: per-session state machine (phases, barge-in, turn queueing)
- turn: turn pipeline coordinator (classification -> generation -> synthesis)
- metrics / export: per-turn stage timing, cost model, JSON and CSV export
- adapters: streaming stage contracts with stub and live implementations
- server: session manager owning the shared metrics collector
"""
from voice.conversation import ConversationStateMachine
from voice.errors import (
    BufferOverflow,
    ClassificationDegraded,
    ConnectionClosed,
    GenerationFailure,
    StageTimeout,
    StageUnavailable,
    SynthesisFailure,
    VoiceError,
)
from voice.export import export_csv, export_json, write_metrics
from voice.metrics import MetricsCollector, Stage
from voice.server import VoiceSessionManager
from voice.turn import TurnCoordinator, TurnOutcome

__all__ = [
    "ConversationStateMachine",
    "TurnCoordinator", "TurnOutcome",
    "MetricsCollector", "Stage",
    "export_csv", "export_json", "write_metrics",
    "VoiceSessionManager",
    "VoiceError", "StageTimeout", "StageUnavailable", "ClassificationDegraded",
    "GenerationFailure", "SynthesisFailure", "BufferOverflow", "ConnectionClosed",
]
