"""
Metrics Collector — per-turn stage timing and cost bookkeeping.

Independent of pipeline logic. One explicitly constructed instance is
owned by the session supervisor and passed into every coordinator.

- start_conversation / end_conversation bracket a conversation
- start_turn opens an in-flight record; record_stage / record_error fill it
- complete_turn seals it exactly once: total latency is the SUM of the
  stage latencies (not wall-clock span, since speculative synthesis
  overlaps generation), cost comes from the fixed unit-cost model, and
  the conversation aggregates (avg / p50 / p95 / max / cost) are recomputed
- export() returns a read-only snapshot with by-intent and by-emotion summaries
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog

from config.settings import CostModel
from models.schemas import new_id, utcnow
from voice.audio import pcm16_duration_ms

logger = structlog.get_logger()


class Stage(str, Enum):
    """Pipeline stages, measured independently."""
    TRANSCRIPTION = "transcription"
    CLASSIFICATION = "classification"
    GENERATION = "generation"
    SYNTHESIS = "synthesis"


def percentile(values: list[float], pct: int) -> float:
    """Nearest-rank on the sorted values: index floor(n * pct / 100), clamped."""
    if not values:
        return 0.0
    sorted_vals = sorted(values)
    idx = int(len(sorted_vals) * pct / 100)
    idx = min(idx, len(sorted_vals) - 1)
    return sorted_vals[idx]


# ══════════════════════════════════════════════════════════════
#  RECORDS
# ══════════════════════════════════════════════════════════════

@dataclass
class StageMetrics:
    """One stage's measurement within a turn."""
    stage: Stage
    latency_ms: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"latency_ms": round(self.latency_ms, 3), **self.details}


@dataclass
class TurnMetrics:
    turn_id: str
    conversation_id: str
    user_input: str
    timestamp: datetime = field(default_factory=utcnow)
    stages: dict[Stage, StageMetrics] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    total_latency_ms: float = 0.0
    total_cost_usd: float = 0.0
    cancelled: bool = False
    sealed_at: Optional[datetime] = None

    def stage(self, stage: Stage) -> Optional[StageMetrics]:
        return self.stages.get(stage)

    def latency(self, stage: Stage) -> float:
        record = self.stages.get(stage)
        return record.latency_ms if record else 0.0

    def detail(self, stage: Stage, key: str, default: Any = None) -> Any:
        record = self.stages.get(stage)
        if record is None:
            return default
        return record.details.get(key, default)

    @property
    def intent_type(self) -> str:
        return self.detail(Stage.CLASSIFICATION, "intent_type", "none")

    @property
    def emotion(self) -> str:
        return self.detail(Stage.CLASSIFICATION, "emotion", "none")

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "turn_id": self.turn_id,
            "timestamp": self.timestamp.isoformat(),
            "user_input": self.user_input,
            "user_input_length": len(self.user_input),
            "stages": {s.value: m.to_dict() for s, m in self.stages.items()},
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "total_latency_ms": round(self.total_latency_ms, 3),
            "total_cost_usd": self.total_cost_usd,
        }


@dataclass
class ConversationMetrics:
    """Aggregates over the sealed turns of one conversation."""
    conversation_id: str
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    turns: list[TurnMetrics] = field(default_factory=list)
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    total_cost_usd: float = 0.0

    @property
    def total_turns(self) -> int:
        return len(self.turns)

    def recompute(self) -> None:
        latencies = [t.total_latency_ms for t in self.turns]
        if latencies:
            self.avg_latency_ms = sum(latencies) / len(latencies)
            self.p50_latency_ms = percentile(latencies, 50)
            self.p95_latency_ms = percentile(latencies, 95)
            self.max_latency_ms = max(latencies)
        self.total_cost_usd = sum(t.total_cost_usd for t in self.turns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "total_turns": self.total_turns,
            "turns": [t.to_dict() for t in self.turns],
            "avg_latency_ms": round(self.avg_latency_ms, 3),
            "p50_latency_ms": round(self.p50_latency_ms, 3),
            "p95_latency_ms": round(self.p95_latency_ms, 3),
            "max_latency_ms": round(self.max_latency_ms, 3),
            "total_cost_usd": self.total_cost_usd,
        }


# ══════════════════════════════════════════════════════════════
#  STAGE TRACKER
# ══════════════════════════════════════════════════════════════

class StageTracker:
    """Rolling latency statistics for one stage across all conversations."""

    def __init__(self, stage: Stage, window_size: int = 500):
        self.stage = stage
        self._measurements: deque[float] = deque(maxlen=window_size)
        self._total: float = 0.0
        self._count: int = 0
        self._max: float = 0.0

    def record(self, duration_ms: float) -> None:
        self._measurements.append(duration_ms)
        self._total += duration_ms
        self._count += 1
        self._max = max(self._max, duration_ms)

    @property
    def count(self) -> int:
        return self._count

    @property
    def avg_ms(self) -> float:
        return self._total / self._count if self._count > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        values = list(self._measurements)
        return {
            "stage": self.stage.value,
            "count": self._count,
            "avg_ms": round(self.avg_ms, 1),
            "p50_ms": round(percentile(values, 50), 1),
            "p95_ms": round(percentile(values, 95), 1),
            "max_ms": round(self._max, 1),
        }


# ══════════════════════════════════════════════════════════════
#  COST MODEL
# ══════════════════════════════════════════════════════════════

def estimate_turn_cost(turn: TurnMetrics, costs: CostModel) -> float:
    """
    Fixed unit-cost estimate for the stages that ran. Actual token and
    byte counts are used when recorded, defaults otherwise.
    """
    cost = 0.0

    if Stage.TRANSCRIPTION in turn.stages:
        cost += costs.default_utterance_minutes * costs.transcription_per_minute

    if Stage.CLASSIFICATION in turn.stages:
        input_tokens = turn.detail(Stage.CLASSIFICATION, "input_tokens") or costs.classification_input_tokens
        output_tokens = turn.detail(Stage.CLASSIFICATION, "output_tokens") or costs.classification_output_tokens
        cost += input_tokens * costs.classification_input_per_million / 1_000_000
        cost += output_tokens * costs.classification_output_per_million / 1_000_000

    if Stage.GENERATION in turn.stages:
        tokens = turn.detail(Stage.GENERATION, "total_tokens") or costs.generation_default_tokens
        input_tokens = tokens * costs.generation_input_share
        output_tokens = tokens * (1 - costs.generation_input_share)
        cost += input_tokens * costs.generation_input_per_million / 1_000_000
        cost += output_tokens * costs.generation_output_per_million / 1_000_000

    if Stage.SYNTHESIS in turn.stages:
        byte_count = turn.detail(Stage.SYNTHESIS, "byte_count")
        if byte_count:
            minutes = pcm16_duration_ms(byte_count, costs.synthesis_sample_rate) / 60_000
        else:
            minutes = costs.default_response_minutes
        cost += minutes * costs.synthesis_per_minute

    return cost


# ══════════════════════════════════════════════════════════════
#  COLLECTOR
# ══════════════════════════════════════════════════════════════

class MetricsCollector:
    """
    Keyed by conversation and turn id; no cross-conversation coordination.

    Usage:
        turn_id = collector.start_turn(conversation_id, "I need a room")
        collector.record_stage(turn_id, Stage.CLASSIFICATION, 50.0, intent_type="book_room")
        collector.complete_turn(turn_id)
    """

    def __init__(self, costs: CostModel = None):
        self.costs = costs or CostModel()
        self._conversations: dict[str, ConversationMetrics] = {}
        self._in_flight: dict[str, TurnMetrics] = {}
        self._stages: dict[Stage, StageTracker] = {s: StageTracker(s) for s in Stage}

    # ── Conversation lifetime ─────────────────────────────────

    def start_conversation(self, conversation_id: str) -> ConversationMetrics:
        existing = self._conversations.get(conversation_id)
        if existing is not None:
            return existing
        conversation = ConversationMetrics(conversation_id=conversation_id)
        self._conversations[conversation_id] = conversation
        logger.info("metrics_conversation_started", conversation_id=conversation_id)
        return conversation

    def end_conversation(self, conversation_id: str) -> Optional[ConversationMetrics]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None

        # Turns still open at this point are sealed rather than leaked
        orphaned = [t.turn_id for t in self._in_flight.values() if t.conversation_id == conversation_id]
        for turn_id in orphaned:
            logger.warning("metrics_turn_sealed_at_conversation_end", conversation_id=conversation_id, turn_id=turn_id)
            self.record_error(turn_id, "conversation ended before turn completed")
            self.complete_turn(turn_id)

        if conversation.ended_at is None:
            conversation.ended_at = utcnow()
        logger.info(
            "metrics_conversation_ended",
            conversation_id=conversation_id,
            total_turns=conversation.total_turns,
            total_cost_usd=round(conversation.total_cost_usd, 6),
        )
        return conversation

    # ── Turns ─────────────────────────────────────────────────

    def start_turn(self, conversation_id: str, input_text: str) -> str:
        if conversation_id not in self._conversations:
            self.start_conversation(conversation_id)
        turn_id = new_id()
        self._in_flight[turn_id] = TurnMetrics(
            turn_id=turn_id,
            conversation_id=conversation_id,
            user_input=input_text,
        )
        logger.debug("metrics_turn_started", conversation_id=conversation_id, turn_id=turn_id)
        return turn_id

    def record_stage(self, turn_id: str, stage: Stage, latency_ms: float, **details: Any) -> None:
        turn = self._in_flight.get(turn_id)
        if turn is None:
            logger.debug("metrics_stage_for_unknown_turn", turn_id=turn_id, stage=Stage(stage).value)
            return
        stage = Stage(stage)
        turn.stages[stage] = StageMetrics(stage=stage, latency_ms=float(latency_ms), details=details)

    def record_error(self, turn_id: str, message: str) -> None:
        turn = self._in_flight.get(turn_id)
        if turn is None:
            logger.debug("metrics_error_for_unknown_turn", turn_id=turn_id, error=message)
            return
        turn.errors.append(message)

    def mark_cancelled(self, turn_id: str) -> None:
        turn = self._in_flight.get(turn_id)
        if turn is not None:
            turn.cancelled = True

    def complete_turn(self, turn_id: str) -> Optional[TurnMetrics]:
        """Seal the turn. A second call for the same id is a no-op and returns None."""
        turn = self._in_flight.pop(turn_id, None)
        if turn is None:
            return None

        turn.total_latency_ms = sum(m.latency_ms for m in turn.stages.values())
        turn.total_cost_usd = estimate_turn_cost(turn, self.costs)
        turn.sealed_at = utcnow()
        for stage, record in turn.stages.items():
            self._stages[stage].record(record.latency_ms)

        conversation = self._conversations.get(turn.conversation_id)
        if conversation is None:
            conversation = self.start_conversation(turn.conversation_id)
        conversation.turns.append(turn)
        conversation.recompute()

        logger.info(
            "metrics_turn_completed",
            conversation_id=turn.conversation_id,
            turn_id=turn_id,
            total_latency_ms=round(turn.total_latency_ms, 1),
            total_cost_usd=round(turn.total_cost_usd, 6),
            errors=len(turn.errors),
            cancelled=turn.cancelled,
        )
        return turn

    # ── Queries ───────────────────────────────────────────────

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, turn_id: str) -> bool:
        return turn_id in self._in_flight

    def get_conversation(self, conversation_id: str) -> Optional[ConversationMetrics]:
        return self._conversations.get(conversation_id)

    def get_all_conversations(self) -> list[ConversationMetrics]:
        return list(self._conversations.values())

    def get_stage_stats(self) -> dict[str, Any]:
        return {s.value: t.to_dict() for s, t in self._stages.items() if t.count > 0}

    def export(self) -> dict[str, Any]:
        """Snapshot of sealed data. In-flight turns are neither included nor touched."""
        conversations = [c.to_dict() for c in self._conversations.values()]
        all_turns = [t for c in self._conversations.values() for t in c.turns]

        def group(key) -> dict[str, dict[str, Any]]:
            totals: dict[str, list[float]] = {}
            for turn in all_turns:
                totals.setdefault(key(turn), []).append(turn.total_latency_ms)
            return {
                name: {"count": len(vals), "avg_latency_ms": round(sum(vals) / len(vals), 3)}
                for name, vals in totals.items()
            }

        latencies = [t.total_latency_ms for t in all_turns]
        return {
            "generated_at": utcnow().isoformat(),
            "conversations": conversations,
            "summary": {
                "total_conversations": len(conversations),
                "total_turns": len(all_turns),
                "avg_latency_ms": round(sum(latencies) / len(latencies), 3) if latencies else 0.0,
                "p50_latency_ms": percentile(latencies, 50),
                "p95_latency_ms": percentile(latencies, 95),
                "total_cost_usd": sum(c.total_cost_usd for c in self._conversations.values()),
                "in_flight_turns": len(self._in_flight),
                "by_intent": group(lambda t: t.intent_type),
                "by_emotion": group(lambda t: t.emotion),
                "stages": self.get_stage_stats(),
            },
        }

    def clear(self) -> None:
        self._conversations.clear()
        self._in_flight.clear()
        self._stages = {s: StageTracker(s) for s in Stage}
        logger.info("metrics_cleared")
