"""
Metrics export: full nested JSON and a flattened one-row-per-turn CSV.
"""
from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Any

import structlog

from voice.metrics import MetricsCollector, Stage, TurnMetrics

logger = structlog.get_logger()

CSV_COLUMNS = [
    "conversation_id",
    "turn_id",
    "timestamp",
    "user_input",
    "asr_latency_ms",
    "asr_confidence",
    "intent_latency_ms",
    "intent_type",
    "intent_confidence",
    "tone_emotion",
    "tone_sentiment",
    "tone_urgency",
    "dialogue_latency_ms",
    "dialogue_model",
    "dialogue_tokens",
    "tts_latency_ms",
    "tts_audio_chunks",
    "tts_audio_bytes",
    "total_latency_ms",
    "total_cost_usd",
    "errors",
]


def _latency(turn: TurnMetrics, stage: Stage):
    record = turn.stage(stage)
    return round(record.latency_ms, 3) if record else None


def turn_to_row(turn: TurnMetrics) -> list[Any]:
    c, g = Stage.CLASSIFICATION, Stage.GENERATION
    return [
        turn.conversation_id,
        turn.turn_id,
        turn.timestamp.isoformat(),
        turn.user_input,
        _latency(turn, Stage.TRANSCRIPTION),
        turn.detail(Stage.TRANSCRIPTION, "confidence"),
        _latency(turn, c),
        turn.detail(c, "intent_type"),
        turn.detail(c, "intent_confidence"),
        turn.detail(c, "emotion"),
        turn.detail(c, "sentiment"),
        turn.detail(c, "urgency"),
        _latency(turn, g),
        turn.detail(g, "model"),
        turn.detail(g, "total_tokens"),
        _latency(turn, Stage.SYNTHESIS),
        turn.detail(Stage.SYNTHESIS, "chunk_count"),
        turn.detail(Stage.SYNTHESIS, "byte_count"),
        round(turn.total_latency_ms, 3),
        round(turn.total_cost_usd, 8),
        "; ".join(turn.errors),
    ]


def export_json(collector: MetricsCollector, indent: int = 2) -> str:
    return json.dumps(collector.export(), indent=indent, default=str)


def export_csv(collector: MetricsCollector) -> str:
    """Strings are always quoted (so the errors column is), numbers never."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for conversation in collector.get_all_conversations():
        for turn in conversation.turns:
            writer.writerow(turn_to_row(turn))
    return buf.getvalue()


def write_metrics(collector: MetricsCollector, output_dir: str) -> tuple[Path, Path]:
    """Write metrics.json and metrics.csv into output_dir."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    json_path = out / "metrics.json"
    csv_path = out / "metrics.csv"
    json_path.write_text(export_json(collector))
    csv_path.write_text(export_csv(collector))
    logger.info("metrics_written", json_path=str(json_path), csv_path=str(csv_path))
    return json_path, csv_path
