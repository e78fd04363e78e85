"""
Voice monitoring — periodic metrics publishing and health checks.

Publishes rolling per-stage latency stats from the MetricsCollector as
structured log lines; the same numbers back the /health endpoint.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from voice.metrics import MetricsCollector, Stage

logger = structlog.get_logger()

# p95 total turn latency above which the subsystem reports degraded
DEGRADED_P95_MS = 1500.0


class VoiceMetricsPublisher:
    """Logs collector stats every publish_interval_s seconds."""

    def __init__(self, collector: MetricsCollector, publish_interval_s: float = 30):
        self.collector = collector
        self.publish_interval_s = publish_interval_s
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.published: int = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._publish_loop(), name="metrics_publisher")
        logger.info("metrics_publisher_started", interval=self.publish_interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _publish_loop(self) -> None:
        while self._running:
            try:
                self.publish()
            except Exception as e:
                logger.error("metrics_publish_error", error=str(e))
            await asyncio.sleep(self.publish_interval_s)

    def build_metric_data(self) -> list[dict[str, Any]]:
        summary = self.collector.export()["summary"]
        metrics = [
            {"name": "in_flight_turns", "value": summary["in_flight_turns"], "unit": "Count"},
            {"name": "total_turns", "value": summary["total_turns"], "unit": "Count"},
            {"name": "total_cost_usd", "value": round(summary["total_cost_usd"], 6), "unit": "USD"},
        ]
        for stage, stats in summary["stages"].items():
            for key in ("p50_ms", "p95_ms"):
                if stats.get(key, 0) > 0:
                    metrics.append({"name": f"{stage}_{key}", "value": stats[key], "unit": "Milliseconds"})
        if summary["total_turns"]:
            metrics.append({"name": "turn_p95_ms", "value": summary["p95_latency_ms"], "unit": "Milliseconds"})
        return metrics

    def publish(self) -> int:
        metrics = self.build_metric_data()
        for m in metrics:
            logger.info("voice_metric", name=m["name"], value=m["value"], unit=m["unit"])
        self.published += 1
        return len(metrics)

    def get_health(self) -> dict[str, Any]:
        """Health check data for the voice subsystem."""
        summary = self.collector.export()["summary"]
        stages = summary["stages"]
        p95 = summary["p95_latency_ms"]
        return {
            "status": "healthy" if p95 < DEGRADED_P95_MS else "degraded",
            "in_flight_turns": summary["in_flight_turns"],
            "total_turns": summary["total_turns"],
            "latency_p95_ms": p95,
            "stage_p95_ms": {
                stage.value: stages.get(stage.value, {}).get("p95_ms", 0.0) for stage in Stage
            },
        }
