"""
Tests for the streaming stage adapters.

Coverage:
- Stub classifier rules and entity extraction
- Measured streams: latency reporting, flushed terminal chunk, cancel()
- Failure injection on the stub adapters
- Energy VAD, Deepgram result parsing
- OpenAI and Cartesia over httpx.MockTransport, HTTP error mapping
- Adapter selection from settings
"""
import json

import httpx
import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError

from config.settings import LIVE_MODE, ProviderConfig, StubConfig, VoiceSettings
from models.schemas import (
    BusinessProfile,
    DialogueRequest,
    IntentType,
    ProsodyHints,
    SynthesisRequest,
    ToneEmotion,
    ToneSentiment,
    VADResult,
)
from voice.adapters.cartesia import CartesiaSynthesisAdapter
from voice.adapters.deepgram import DeepgramTranscriptionAdapter
from voice.adapters.factory import build_live_adapters, create_adapters
from voice.adapters.openai import OpenAIClassificationAdapter, OpenAIGenerationAdapter, parse_classification
from voice.adapters.stub import (
    StubClassificationAdapter,
    StubGenerationAdapter,
    StubSynthesisAdapter,
    StubVADAdapter,
    classify_text,
    extract_entities,
)
from voice.adapters.vad import EnergyVADAdapter
from voice.errors import StageTimeout, StageUnavailable, SynthesisFailure


def _request(text: str, profile: BusinessProfile = None) -> DialogueRequest:
    classification = classify_text(text)
    return DialogueRequest(
        user_message=text,
        intent=classification.intent,
        tone=classification.tone,
        profile=profile or BusinessProfile(name="Lance Hotels"),
        history=[],
    )


def _tone_frame(amplitude: int = 8000, samples: int = 320) -> bytes:
    t = np.arange(samples)
    wave = (amplitude * np.sin(2 * np.pi * 440 * t / 16000)).astype("<i2")
    return wave.tobytes()


def _mock(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


class ScriptedSocket:
    """Stands in for a websocket connection: yields messages, then ends or fails."""

    def __init__(self, messages, error: Exception = None):
        self.messages = messages
        self.error = error

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error


# ══════════════════════════════════════════════════════════════
#  Stub classification
# ══════════════════════════════════════════════════════════════

class TestStubClassifier:

    @pytest.mark.parametrize("text,intent", [
        ("I need a room for tonight with two beds", IntentType.BOOK_ROOM),
        ("Is there any availability next weekend?", IntentType.CHECK_AVAILABILITY),
        ("Please cancel my booking", IntentType.CANCEL_RESERVATION),
        ("The shower is broken", IntentType.REPORT_ISSUE),
        ("I want to speak to a manager", IntentType.TRANSFER_TO_HUMAN),
        ("How much is it per night?", IntentType.ASK_PRICING),
        ("Where are you located?", IntentType.ASK_LOCATION),
        ("Goodbye", IntentType.FAREWELL),
        ("Hello there", IntentType.GREETING),
        ("Purple elephants", IntentType.UNCLEAR),
    ])
    def test_intents(self, text, intent):
        assert classify_text(text).intent.type == intent

    def test_unclear_has_low_confidence(self):
        result = classify_text("Purple elephants")
        assert result.intent.confidence == 0.3
        assert classify_text("Book a room").intent.confidence == 0.85

    def test_tone(self):
        angry = classify_text("This is ridiculous")
        assert angry.tone.emotion == ToneEmotion.ANGRY
        assert angry.tone.sentiment == ToneSentiment.NEGATIVE
        assert angry.tone.politeness_score == 0.3

        urgent = classify_text("I need this fixed right now")
        assert urgent.tone.emotion == ToneEmotion.URGENT
        assert urgent.tone.urgency_score == 0.9

    def test_entities(self):
        entities = extract_entities("three guests, two queen beds for 2 nights starting tomorrow in a suite")
        assert entities == {
            "guests": 3,
            "beds": 2,
            "bed_type": "queen",
            "nights": 2,
            "check_in": "tomorrow",
            "room_type": "queen",
        }

    def test_no_entities(self):
        assert extract_entities("hello") == {}

    @pytest.mark.asyncio
    async def test_adapter_reports_configured_latency(self):
        adapter = StubClassificationAdapter(StubConfig(classification_ms=42.0, simulate_delay=False))
        result = await adapter.classify("Book a room", [])
        assert result.latency_ms == 42.0
        assert result.intent.model_used == "stub-classifier"

    @pytest.mark.asyncio
    async def test_failure_injection_is_per_call(self):
        adapter = StubClassificationAdapter(StubConfig(simulate_delay=False), fail_on_calls={2})
        await adapter.classify("hi", [])
        with pytest.raises(RuntimeError):
            await adapter.classify("hi", [])
        await adapter.classify("hi", [])
        assert adapter.calls == 3


# ══════════════════════════════════════════════════════════════
#  Stub streams
# ══════════════════════════════════════════════════════════════

class TestStubStreams:

    @pytest.mark.asyncio
    async def test_generation_stream(self, voice_settings):
        adapter = StubGenerationAdapter(voice_settings.stub)
        stream = adapter.stream(_request("Hello"))
        tokens = [t async for t in stream]

        response = stream.response()
        assert "".join(tokens).strip() == response.text
        assert response.text == "Hello! Welcome to Lance Hotels. How can I help you today?"
        assert response.latency_ms == 120.0
        assert response.time_to_first_token_ms == pytest.approx(120.0 / len(tokens))
        assert response.total_tokens > 0
        assert response.model == "stub-llm"

    @pytest.mark.asyncio
    async def test_unknown_intent_gets_fallback(self, voice_settings):
        response = await StubGenerationAdapter(voice_settings.stub).generate(_request("Purple elephants"))
        assert response.text == "I'd be happy to help with that. Could you tell me a little more?"

    @pytest.mark.asyncio
    async def test_synthesis_chunks(self, voice_settings):
        adapter = StubSynthesisAdapter(voice_settings.stub)
        output = await adapter.synthesize(SynthesisRequest(text="x" * 45))

        assert len(output.chunks) == 3
        assert [c.flushed for c in output.chunks] == [False, False, True]
        assert output.result.chunk_count == 3
        assert output.result.byte_count == 3 * 4800
        assert output.result.latency_ms == 80.0

    @pytest.mark.asyncio
    async def test_cancelled_stream_stops_quietly(self, voice_settings):
        stream = StubSynthesisAdapter(voice_settings.stub).stream(SynthesisRequest(text="x" * 100))
        received = []
        async for chunk in stream:
            received.append(chunk)
            stream.cancel()
        assert len(received) == 1
        assert not stream.flushed
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_synthesis_failure_raises(self, voice_settings):
        adapter = StubSynthesisAdapter(voice_settings.stub, fail_on_calls={1})
        with pytest.raises(RuntimeError):
            await adapter.synthesize(SynthesisRequest(text="hello"))


# ══════════════════════════════════════════════════════════════
#  VAD
# ══════════════════════════════════════════════════════════════

class TestVAD:

    @pytest.mark.asyncio
    async def test_stub_vad_scripted(self):
        vad = StubVADAdapter()
        vad.script(VADResult(speaking=True, confidence=0.9))
        assert (await vad.process(b"")).speaking
        assert not (await vad.process(b"")).speaking

    @pytest.mark.asyncio
    async def test_energy_vad_detects_speech(self):
        vad = EnergyVADAdapter(threshold=0.02)
        result = await vad.process(_tone_frame())
        assert result.speaking
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_energy_vad_silence(self):
        vad = EnergyVADAdapter(threshold=0.02)
        result = await vad.process(bytes(640))
        assert not result.speaking

    @pytest.mark.asyncio
    async def test_energy_vad_hangover(self):
        vad = EnergyVADAdapter(threshold=0.02, hangover_frames=3)
        await vad.process(_tone_frame())
        states = [(await vad.process(bytes(640))).speaking for _ in range(12)]
        assert states[0] is True
        assert states[-1] is False


# ══════════════════════════════════════════════════════════════
#  Deepgram result parsing
# ══════════════════════════════════════════════════════════════

class TestDeepgramParsing:

    def _results(self, transcript: str, is_final: bool, confidence: float = 0.92) -> dict:
        return {
            "type": "Results",
            "is_final": is_final,
            "channel": {"alternatives": [{"transcript": transcript, "confidence": confidence}]},
        }

    def test_interim_then_final(self):
        adapter = DeepgramTranscriptionAdapter(ProviderConfig())
        interim = adapter._parse_result(self._results("I need", False))
        final = adapter._parse_result(self._results("I need a room", True))

        assert not interim.is_final
        assert final.is_final
        assert final.text == "I need a room"
        assert final.confidence == 0.92
        assert final.latency_ms >= interim.latency_ms

    def test_ignores_other_messages(self):
        adapter = DeepgramTranscriptionAdapter(ProviderConfig())
        assert adapter._parse_result({"type": "Metadata"}) is None
        assert adapter._parse_result(self._results("   ", True)) is None
        assert adapter._parse_result({"type": "Results", "channel": {"alternatives": []}}) is None

    def test_listen_url(self):
        adapter = DeepgramTranscriptionAdapter(ProviderConfig(deepgram_model="nova-2"), sample_rate=16000)
        url = adapter._listen_url()
        assert url.startswith("wss://api.deepgram.com/v1/listen?")
        assert "sample_rate=16000" in url
        assert "interim_results=true" in url

    @pytest.mark.asyncio
    async def test_callbacks_silenced_after_disconnect(self):
        adapter = DeepgramTranscriptionAdapter(ProviderConfig())
        received = []
        adapter.on_transcript(received.append)
        await adapter.disconnect()
        adapter._emit(adapter._parse_result(self._results("hello", True)))
        assert received == []

    @pytest.mark.asyncio
    async def test_dropped_stream_reported(self):
        adapter = DeepgramTranscriptionAdapter(ProviderConfig())
        adapter._connected = True
        adapter._ws = ScriptedSocket([json.dumps(self._results("hello", True))], error=ConnectionClosedError(None, None))
        received, closed = [], []
        adapter.on_transcript(received.append)
        adapter.on_closed(closed.append)

        await adapter._receive_loop()

        assert [e.text for e in received] == ["hello"]
        assert len(closed) == 1
        assert closed[0].stage == "transcription"
        assert not adapter.connected

    @pytest.mark.asyncio
    async def test_clean_stream_end_reported(self):
        adapter = DeepgramTranscriptionAdapter(ProviderConfig())
        adapter._connected = True
        adapter._ws = ScriptedSocket([])
        closed = []
        adapter.on_closed(closed.append)

        await adapter._receive_loop()
        await adapter._receive_loop()

        assert [str(e) for e in closed] == ["Deepgram stream ended"]

    @pytest.mark.asyncio
    async def test_no_close_report_after_disconnect(self):
        adapter = DeepgramTranscriptionAdapter(ProviderConfig())
        adapter._connected = True
        closed = []
        adapter.on_closed(closed.append)
        await adapter.disconnect()

        adapter._ws = ScriptedSocket([], error=ConnectionClosedError(None, None))
        await adapter._receive_loop()
        assert closed == []


# ══════════════════════════════════════════════════════════════
#  OpenAI
# ══════════════════════════════════════════════════════════════

class TestParseClassification:

    def test_valid_payload(self):
        result = parse_classification({
            "intent": "book_room",
            "entities": {"guests": 2},
            "emotion": "happy",
            "sentiment": "positive",
            "urgency": 0.4,
            "politeness": 0.9,
            "confidence": 0.95,
        }, "gpt-4o-mini", 120.0)
        assert result.intent.type == IntentType.BOOK_ROOM
        assert result.intent.entities == {"guests": 2}
        assert result.tone.emotion == ToneEmotion.HAPPY
        assert result.latency_ms == 120.0

    def test_unknown_labels_fall_back(self):
        result = parse_classification(
            {"intent": "order_pizza", "emotion": "ecstatic", "sentiment": "??", "entities": "nope", "urgency": 7},
            "m", 10.0,
        )
        assert result.intent.type == IntentType.UNCLEAR
        assert result.tone.emotion == ToneEmotion.NEUTRAL
        assert result.tone.sentiment == ToneSentiment.NEUTRAL
        assert result.intent.entities == {}
        assert result.tone.urgency_score == 1.0


class TestOpenAIAdapters:

    @pytest.mark.asyncio
    async def test_classify(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers["Authorization"]
            content = json.dumps({"intent": "ask_amenities", "emotion": "neutral", "confidence": 0.9})
            return httpx.Response(200, json={
                "choices": [{"message": {"content": content}}],
                "usage": {"prompt_tokens": 420, "completion_tokens": 35},
            })

        adapter = OpenAIClassificationAdapter(ProviderConfig(openai_api_key="sk-test"), transport=_mock(handler))
        result = await adapter.classify("Do you have a pool?", [])

        assert result.intent.type == IntentType.ASK_AMENITIES
        assert (result.input_tokens, result.output_tokens) == (420, 35)
        assert captured["auth"] == "Bearer sk-test"
        assert captured["body"]["response_format"] == {"type": "json_object"}
        assert "Do you have a pool?" in captured["body"]["messages"][0]["content"]
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_classify_unavailable(self):
        adapter = OpenAIClassificationAdapter(ProviderConfig(), transport=_mock(lambda r: httpx.Response(503, text="busy")))
        with pytest.raises(StageUnavailable) as exc:
            await adapter.classify("hi", [])
        assert exc.value.stage == "classification"

    @pytest.mark.asyncio
    async def test_stream_tokens(self):
        events = [
            {"choices": [{"delta": {"content": "Sure, "}}]},
            {"choices": [{"delta": {"content": "we have a pool."}}]},
            {"choices": [], "usage": {"total_tokens": 42}},
        ]
        body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

        adapter = OpenAIGenerationAdapter(ProviderConfig(openai_api_key="sk-test"), transport=_mock(handler))
        stream = adapter.stream(_request("Do you have a pool?"))
        tokens = [t async for t in stream]

        assert tokens == ["Sure, ", "we have a pool."]
        response = stream.response()
        assert response.text == "Sure, we have a pool."
        assert response.total_tokens == 42
        assert response.provider == "openai"

    @pytest.mark.asyncio
    async def test_generate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "choices": [{"message": {"content": " Welcome! "}}],
                "usage": {"total_tokens": 12},
            })

        adapter = OpenAIGenerationAdapter(ProviderConfig(), transport=_mock(handler))
        response = await adapter.generate(_request("Hello"))
        assert response.text == "Welcome!"
        assert response.total_tokens == 12


# ══════════════════════════════════════════════════════════════
#  Cartesia
# ══════════════════════════════════════════════════════════════

class TestCartesiaAdapter:

    @pytest.mark.asyncio
    async def test_stream_marks_last_chunk_flushed(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            captured["key"] = request.headers["X-API-Key"]
            return httpx.Response(200, content=bytes(12000))

        adapter = CartesiaSynthesisAdapter(ProviderConfig(cartesia_api_key="ck", cartesia_voice_id="v1"), transport=_mock(handler))
        output = await adapter.synthesize(SynthesisRequest(
            text="One moment please.",
            prosody=ProsodyHints(speed=0.9, emotion=ToneEmotion.FRUSTRATED),
        ))

        assert [c.flushed for c in output.chunks][-1] is True
        assert sum(len(c.data) for c in output.chunks) == 12000
        assert output.result.byte_count == 12000
        voice = captured["body"]["voice"]
        assert voice["id"] == "v1"
        assert voice["__experimental_controls"]["speed"] == "slow"
        assert captured["body"]["output_format"]["encoding"] == "pcm_s16le"
        assert captured["key"] == "ck"

    @pytest.mark.asyncio
    async def test_bad_request_is_synthesis_failure(self):
        adapter = CartesiaSynthesisAdapter(ProviderConfig(), transport=_mock(lambda r: httpx.Response(400, text="bad voice")))
        with pytest.raises(SynthesisFailure):
            await adapter.synthesize(SynthesisRequest(text="hello"))


class TestErrorMapping:

    def _adapter(self):
        return OpenAIGenerationAdapter(ProviderConfig(), timeout_s=2.0)

    def test_timeout(self):
        error = self._adapter()._map_error(httpx.ReadTimeout("slow"))
        assert isinstance(error, StageTimeout)
        assert error.stage == "generation"

    def test_transport_error(self):
        error = self._adapter()._map_error(httpx.ConnectError("refused"))
        assert isinstance(error, StageUnavailable)
        assert error.retryable

    def test_rate_limited(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        response = httpx.Response(429, request=request)
        error = self._adapter()._map_error(httpx.HTTPStatusError("429", request=request, response=response))
        assert isinstance(error, StageUnavailable)


# ══════════════════════════════════════════════════════════════
#  Factory
# ══════════════════════════════════════════════════════════════

class TestFactory:

    def test_stub_mode(self, voice_settings):
        adapters = create_adapters(voice_settings)
        assert adapters.mode == "stub"
        assert adapters.generation.provider == "stub"
        assert isinstance(adapters.vad, StubVADAdapter)

    def test_live_mode(self):
        settings = VoiceSettings(mode=LIVE_MODE)
        adapters = build_live_adapters(settings)
        assert adapters.mode == "live"
        assert adapters.transcription.provider == "deepgram"
        assert adapters.classification.provider == "openai"
        assert adapters.synthesis.provider == "cartesia"
        assert isinstance(adapters.vad, EnergyVADAdapter)
