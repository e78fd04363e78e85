"""Shared test fixtures for the voice orchestrator."""
import asyncio
from typing import Any, Optional

import pytest

from config.settings import StubConfig, VoiceSettings
from models.schemas import (
    AudioChunk,
    BusinessProfile,
    DialogueRequest,
    SynthesisRequest,
    TranscriptEvent,
)
from voice.adapters.base import AdapterSet, AudioStream, GenerationAdapter, SynthesisAdapter, TokenStream
from voice.adapters.factory import build_stub_adapters
from voice.adapters.stub import (
    StubClassificationAdapter,
    StubGenerationAdapter,
    StubSynthesisAdapter,
)
from voice.events import EventChannel
from voice.metrics import MetricsCollector
from voice.turn import TurnCoordinator

CONVERSATION_ID = "conv-test"


# ══════════════════════════════════════════════════════════════
#  CONTROLLABLE ADAPTERS
# ══════════════════════════════════════════════════════════════

class GatedGenerationAdapter(GenerationAdapter):
    """Yields the first token, then waits on `gate` before the rest."""

    provider = "gated"
    model = "gated-llm"

    def __init__(self, tokens: Optional[list[str]] = None, latency_ms: float = 120.0):
        self.tokens = tokens or ["Sure, ", "I can ", "help ", "with ", "that."]
        self.latency_ms = latency_ms
        self.started = asyncio.Event()
        self.gate = asyncio.Event()
        self.calls = 0

    def stream(self, request: DialogueRequest) -> TokenStream:
        return TokenStream(self._tokens, provider=self.provider, model=self.model)

    async def _tokens(self, stream: TokenStream):
        self.calls += 1
        stream.reported_latency_ms = self.latency_ms
        yield self.tokens[0]
        self.started.set()
        await self.gate.wait()
        for token in self.tokens[1:]:
            yield token


class GatedSynthesisAdapter(SynthesisAdapter):
    """Yields one chunk, then waits on `gate` before the terminal chunk."""

    provider = "gated"
    model = "gated-tts"

    def __init__(self, latency_ms: float = 80.0):
        self.latency_ms = latency_ms
        self.started = asyncio.Event()
        self.gate = asyncio.Event()
        self.calls = 0

    def stream(self, request: SynthesisRequest) -> AudioStream:
        return AudioStream(self._chunks, provider=self.provider, model=self.model)

    async def _chunks(self, stream: AudioStream):
        self.calls += 1
        stream.reported_latency_ms = self.latency_ms
        yield AudioChunk(data=bytes(960), flushed=False)
        self.started.set()
        await self.gate.wait()
        yield AudioChunk(data=bytes(960), flushed=True)


def final_transcript(text: str, latency_ms: float = 50.0, confidence: float = 0.95) -> TranscriptEvent:
    return TranscriptEvent(text=text, is_final=True, confidence=confidence, latency_ms=latency_ms)


def events_of(events: list[dict[str, Any]], kind: str) -> list[dict[str, Any]]:
    return [e for e in events if e["type"] == kind]


# ══════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def voice_settings() -> VoiceSettings:
    """Stub mode, reported latencies 50/50/120/80 ms, no real sleeping."""
    return VoiceSettings(
        stub=StubConfig(
            transcription_ms=50.0,
            classification_ms=50.0,
            generation_ms=120.0,
            synthesis_ms=80.0,
            simulate_delay=False,
        ),
    )


@pytest.fixture
def collector(voice_settings) -> MetricsCollector:
    return MetricsCollector(voice_settings.costs)


@pytest.fixture
def hotel_profile() -> BusinessProfile:
    return BusinessProfile(
        name="Lance Hotels",
        amenities=["Pool", "Gym", "Free WiFi"],
        policies={"check_in": "3:00 PM", "check_out": "11:00 AM"},
    )


@pytest.fixture
def stub_adapters(voice_settings) -> AdapterSet:
    return build_stub_adapters(voice_settings)


@pytest.fixture
def events() -> EventChannel:
    return EventChannel(CONVERSATION_ID)


@pytest.fixture
def make_coordinator(voice_settings, collector, events, hotel_profile):
    def _make(adapters: AdapterSet, settings: VoiceSettings = None) -> TurnCoordinator:
        return TurnCoordinator(
            CONVERSATION_ID, adapters, collector, events, settings or voice_settings, hotel_profile,
        )
    return _make


@pytest.fixture
def coordinator(make_coordinator, stub_adapters) -> TurnCoordinator:
    return make_coordinator(stub_adapters)


@pytest.fixture
def adapters_with(voice_settings, stub_adapters):
    """Stub adapter set with selected stages replaced or made to fail."""
    def _make(
        classification_failures=(),
        generation_failures=(),
        synthesis_failures=(),
        generation=None,
        synthesis=None,
    ) -> AdapterSet:
        stub = voice_settings.stub
        return AdapterSet(
            transcription=stub_adapters.transcription,
            classification=StubClassificationAdapter(stub, fail_on_calls=classification_failures),
            generation=generation or StubGenerationAdapter(stub, fail_on_calls=generation_failures),
            synthesis=synthesis or StubSynthesisAdapter(stub, fail_on_calls=synthesis_failures),
            vad=stub_adapters.vad,
            mode=stub_adapters.mode,
        )
    return _make
