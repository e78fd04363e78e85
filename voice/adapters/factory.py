"""
Adapter selection. The concrete adapter set is chosen once, when a
session is constructed, from explicit settings.
"""
from __future__ import annotations

import structlog

from config.settings import LIVE_MODE, STUB_MODE, VoiceSettings
from voice.adapters.base import AdapterSet
from voice.adapters.stub import (
    StubClassificationAdapter,
    StubGenerationAdapter,
    StubSynthesisAdapter,
    StubTranscriptionAdapter,
    StubVADAdapter,
)

logger = structlog.get_logger()


def build_stub_adapters(settings: VoiceSettings) -> AdapterSet:
    return AdapterSet(
        transcription=StubTranscriptionAdapter(settings.stub, sample_rate=settings.audio.sample_rate),
        classification=StubClassificationAdapter(settings.stub),
        generation=StubGenerationAdapter(settings.stub),
        synthesis=StubSynthesisAdapter(settings.stub, sample_rate=settings.audio.output_sample_rate),
        vad=StubVADAdapter(),
        mode=STUB_MODE,
    )


def build_live_adapters(settings: VoiceSettings) -> AdapterSet:
    # Imported here so stub-only deployments never touch the network stacks
    from voice.adapters.cartesia import CartesiaSynthesisAdapter
    from voice.adapters.deepgram import DeepgramTranscriptionAdapter
    from voice.adapters.openai import OpenAIClassificationAdapter, OpenAIGenerationAdapter
    from voice.adapters.vad import EnergyVADAdapter

    p, t, a = settings.providers, settings.timeouts, settings.audio
    return AdapterSet(
        transcription=DeepgramTranscriptionAdapter(
            p, sample_rate=a.sample_rate,
            connect_timeout_s=t.transcription_connect_s, queue_size=a.queue_size,
        ),
        classification=OpenAIClassificationAdapter(p, timeout_s=t.classification_s),
        generation=OpenAIGenerationAdapter(p, timeout_s=t.generation_s),
        synthesis=CartesiaSynthesisAdapter(p, sample_rate=a.output_sample_rate, timeout_s=t.synthesis_s),
        vad=EnergyVADAdapter(threshold=a.vad_energy_threshold),
        mode=LIVE_MODE,
    )


def create_adapters(settings: VoiceSettings) -> AdapterSet:
    """Build the adapter set for one session from the configured mode."""
    if settings.is_live_mode:
        adapters = build_live_adapters(settings)
    else:
        adapters = build_stub_adapters(settings)
    logger.info(
        "voice_adapters_selected",
        mode=adapters.mode,
        transcription=adapters.transcription.provider,
        classification=adapters.classification.provider,
        generation=adapters.generation.provider,
        synthesis=adapters.synthesis.provider,
        vad=adapters.vad.provider,
    )
    return adapters
