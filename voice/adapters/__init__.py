"""
Streaming stage adapters: contracts, simulated implementations and the
live Deepgram / OpenAI / Cartesia / energy-VAD implementations.
"""
from voice.adapters.base import (
    AdapterSet,
    AudioStream,
    ClassificationAdapter,
    GenerationAdapter,
    SynthesisAdapter,
    TokenStream,
    TranscriptionAdapter,
    VADAdapter,
)
from voice.adapters.factory import create_adapters

__all__ = [
    "AdapterSet",
    "AudioStream",
    "ClassificationAdapter",
    "GenerationAdapter",
    "SynthesisAdapter",
    "TokenStream",
    "TranscriptionAdapter",
    "VADAdapter",
    "create_adapters",
]
