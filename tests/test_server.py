"""
Tests for the session manager and the metrics publisher.
"""
import asyncio

import pytest

from config.settings import VoiceSettings
from models.schemas import BusinessProfile, ConversationChannel
from voice.adapters.factory import build_stub_adapters
from voice.adapters.stub import StubTranscriptionAdapter
from voice.errors import StageUnavailable
from voice.metrics import MetricsCollector, Stage
from voice.monitoring import DEGRADED_P95_MS, VoiceMetricsPublisher
from voice.server import VoiceSessionManager

from conftest import final_transcript


class RefusingTranscriptionAdapter(StubTranscriptionAdapter):
    async def connect(self, session_id: str) -> None:
        raise StageUnavailable("transcription provider unreachable", "transcription")


def _refusing_factory(settings: VoiceSettings):
    adapters = build_stub_adapters(settings)
    adapters.transcription = RefusingTranscriptionAdapter(settings.stub)
    return adapters


# ══════════════════════════════════════════════════════════════
#  Session manager
# ══════════════════════════════════════════════════════════════

class TestVoiceSessionManager:

    @pytest.mark.asyncio
    async def test_open_and_close(self, voice_settings):
        manager = VoiceSessionManager(voice_settings)
        session = await manager.open_session(channel=ConversationChannel.DEMO, conversation_id="s1")

        assert manager.active_session_count == 1
        assert manager.get_session("s1") is session
        assert session.conversation.channel == ConversationChannel.DEMO

        snapshot = await manager.close_session("s1")
        assert snapshot["phase"] == "ended"
        assert manager.get_session("s1") is None
        assert manager.active_session_count == 0

    @pytest.mark.asyncio
    async def test_close_unknown(self, voice_settings):
        assert await VoiceSessionManager(voice_settings).close_session("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, voice_settings):
        manager = VoiceSessionManager(voice_settings)
        await manager.open_session(conversation_id="dup")
        with pytest.raises(ValueError):
            await manager.open_session(conversation_id="dup")
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_sessions_share_collector(self, voice_settings):
        manager = VoiceSessionManager(voice_settings)
        a = await manager.open_session(conversation_id="a")
        b = await manager.open_session(conversation_id="b")
        for session in (a, b):
            session.handle_transcript(final_transcript("Hello"))
            await session.wait_idle()

        assert manager.collector.export()["summary"]["total_turns"] == 2
        status = manager.get_status()
        assert status["active_sessions"] == 2
        assert status["in_flight_turns"] == 0
        assert status["stages"]["generation"]["count"] == 2
        assert {s["conversation_id"] for s in manager.list_sessions()} == {"a", "b"}
        await manager.shutdown()
        assert manager.active_session_count == 0

    @pytest.mark.asyncio
    async def test_default_profile_used(self, voice_settings):
        manager = VoiceSessionManager(voice_settings, profile=BusinessProfile(name="Harbor Inn"))
        session = await manager.open_session()
        assert session.conversation.profile.name == "Harbor Inn"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_start_failure_tears_down(self, voice_settings):
        manager = VoiceSessionManager(voice_settings, adapter_factory=_refusing_factory)
        with pytest.raises(StageUnavailable):
            await manager.open_session(conversation_id="broken")
        assert manager.get_session("broken") is None
        assert manager.collector.get_conversation("broken").ended_at is not None


# ══════════════════════════════════════════════════════════════
#  Metrics publisher
# ══════════════════════════════════════════════════════════════

def _seal(collector: MetricsCollector, latency_ms: float) -> None:
    turn_id = collector.start_turn("c1", "hello")
    collector.record_stage(turn_id, Stage.GENERATION, latency_ms)
    collector.complete_turn(turn_id)


class TestMetricsPublisher:

    def test_empty_collector_is_healthy(self, collector):
        health = VoiceMetricsPublisher(collector).get_health()
        assert health["status"] == "healthy"
        assert health["total_turns"] == 0
        assert set(health["stage_p95_ms"]) == {s.value for s in Stage}

    def test_degraded_when_p95_high(self, collector):
        _seal(collector, DEGRADED_P95_MS + 500)
        assert VoiceMetricsPublisher(collector).get_health()["status"] == "degraded"

    def test_metric_data(self, collector):
        _seal(collector, 200.0)
        metrics = {m["name"]: m for m in VoiceMetricsPublisher(collector).build_metric_data()}
        assert metrics["total_turns"]["value"] == 1
        assert metrics["generation_p95_ms"]["value"] == 200.0
        assert metrics["turn_p95_ms"]["unit"] == "Milliseconds"

    def test_publish_counts(self, collector):
        publisher = VoiceMetricsPublisher(collector)
        assert publisher.publish() == 3
        assert publisher.published == 1

    @pytest.mark.asyncio
    async def test_start_stop(self, collector):
        publisher = VoiceMetricsPublisher(collector, publish_interval_s=60)
        await publisher.start()
        await asyncio.sleep(0.01)
        assert publisher.running
        await publisher.stop()
        assert not publisher.running
        assert publisher.published == 1
