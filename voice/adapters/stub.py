"""
Simulated adapters.

No external calls: every stage reports the fixed latency configured in
StubConfig and only sleeps for it when simulate_delay is on. Used by the
demo websocket in stub mode, the batch runner and the test suite.

Failure injection: each adapter takes fail_on_calls, a set of 1-based
call numbers that raise instead of answering.
"""
from __future__ import annotations

import asyncio
import math
import re
from collections import deque
from typing import Any, Iterable, Optional

import structlog

from config.settings import StubConfig
from models.schemas import (
    AudioChunk,
    ClassificationResult,
    ConversationMessage,
    DialogueRequest,
    Intent,
    IntentType,
    SynthesisRequest,
    Tone,
    ToneEmotion,
    ToneSentiment,
    TranscriptEvent,
    VADResult,
)
from voice.adapters.base import (
    AudioStream,
    ClassificationAdapter,
    GenerationAdapter,
    SynthesisAdapter,
    TokenStream,
    TranscriptionAdapter,
    VADAdapter,
)
from voice.errors import ConnectionClosed

logger = structlog.get_logger()

STUB_CLASSIFIER_MODEL = "stub-classifier"
STUB_LLM_MODEL = "stub-llm"
STUB_CHUNK_BYTES = 4800          # 100ms of PCM16 mono at 24kHz
STUB_CHARS_PER_CHUNK = 20


class _FailureInjector:
    def __init__(self, fail_on_calls: Iterable[int] = ()):
        self.fail_on_calls = set(fail_on_calls)
        self.calls = 0

    def _next_call(self, what: str) -> None:
        self.calls += 1
        if self.calls in self.fail_on_calls:
            raise RuntimeError(f"simulated {what} failure on call {self.calls}")


async def _pause(config: StubConfig, ms: float) -> None:
    if config.simulate_delay and ms > 0:
        await asyncio.sleep(ms / 1000)


# ══════════════════════════════════════════════════════════════
#  TRANSCRIPTION
# ══════════════════════════════════════════════════════════════

class StubTranscriptionAdapter(TranscriptionAdapter):
    """
    Emits a canned utterance after roughly three seconds of audio, or the
    text passed to simulate_utterance(). Each utterance produces one
    interim result (first half of the text) and one final result.
    """

    provider = "stub"

    SCRIPT = [
        "Hello, I'm interested in booking a room.",
        "Do you have availability for next weekend?",
        "I'd like a room with two queen beds please.",
        "What amenities do you offer?",
        "Great, I'll take it. Thank you!",
    ]

    def __init__(self, config: StubConfig, sample_rate: int = 16000):
        super().__init__()
        self.config = config
        self.trigger_bytes = sample_rate * 2 * 3
        self.session_id = ""
        self._buffered = 0
        self._script_index = 0
        self._pending: set[asyncio.Task] = set()

    async def connect(self, session_id: str) -> None:
        self.session_id = session_id
        self._connected = True
        logger.info("stub_transcription_connected", session_id=session_id)

    def send_audio(self, frame: bytes) -> None:
        if not self.connected:
            return
        self._buffered += len(frame)
        if self._buffered < self.trigger_bytes:
            return
        self._buffered = 0
        text = self.SCRIPT[self._script_index % len(self.SCRIPT)]
        self._script_index += 1
        task = asyncio.get_running_loop().create_task(self.simulate_utterance(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def simulate_utterance(self, text: str, confidence: float = 0.95) -> None:
        half = self.config.transcription_ms / 2
        await _pause(self.config, half)
        self._emit(TranscriptEvent(
            text=text[: len(text) // 2] + "...",
            is_final=False,
            confidence=max(confidence - 0.1, 0.0),
            latency_ms=half,
        ))
        await _pause(self.config, half)
        self._emit(TranscriptEvent(
            text=text,
            is_final=True,
            confidence=confidence,
            latency_ms=self.config.transcription_ms,
        ))

    def simulate_stream_loss(self) -> None:
        """Behave as if the provider dropped the stream."""
        self._report_closed(ConnectionClosed("stub transcription stream lost", "transcription"))

    async def _close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("stub_transcription_disconnected", session_id=self.session_id)


# ══════════════════════════════════════════════════════════════
#  CLASSIFICATION
# ══════════════════════════════════════════════════════════════

_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "a": 1, "an": 1, "single": 1,
}
_NUMBER = r"\b(\d+|one|two|three|four|five|six|seven|eight|nine|ten|a|an|single)"

_GUESTS_RE = re.compile(_NUMBER + r"\s+(?:guests?|people|persons|adults)")
_BEDS_RE = re.compile(_NUMBER + r"\s+(?:(queen|king|twin|double)\s+)?beds?")
_NIGHTS_RE = re.compile(_NUMBER + r"\s+nights?")
_ROOM_TYPE_RE = re.compile(r"\b(suite|deluxe|standard|king|queen|double|twin)\b")

# First match wins; phrases are matched as substrings, words as tokens.
_INTENT_RULES: list[tuple[IntentType, tuple[str, ...], tuple[str, ...]]] = [
    (IntentType.TRANSFER_TO_HUMAN, ("real person", "speak to someone", "talk to someone"),
     ("human", "representative", "manager", "operator")),
    (IntentType.CANCEL_RESERVATION, (), ("cancel", "cancellation")),
    (IntentType.MODIFY_RESERVATION, ("change my", "move my"), ("modify", "reschedule", "extend")),
    (IntentType.BILLING_INQUIRY, (), ("bill", "billing", "charge", "charged", "invoice", "refund")),
    (IntentType.REPORT_ISSUE, ("not working", "doesn't work"), ("problem", "issue", "broken", "dirty", "leak")),
    (IntentType.REQUEST_SERVICE, ("room service", "wake up call", "wake-up call"),
     ("towels", "housekeeping", "pillows", "clean")),
    (IntentType.META_FEEDBACK, (), ("feedback", "review", "complaint")),
    (IntentType.CHECK_AVAILABILITY, (), ("available", "availability", "vacancy", "vacancies")),
    (IntentType.ASK_PRICING, ("how much",), ("price", "prices", "pricing", "cost", "rate", "rates")),
    (IntentType.ASK_AMENITIES, (),
     ("amenities", "facilities", "pool", "gym", "spa", "wifi", "breakfast", "parking")),
    (IntentType.ASK_HOURS, ("what time", "check-out time", "check-in time"), ("hours", "open", "closes")),
    (IntentType.ASK_LOCATION, (), ("where", "address", "directions", "located", "location")),
    (IntentType.ASK_RECOMMENDATIONS, (), ("recommend", "recommendation", "suggest", "nearby", "restaurants")),
    (IntentType.BOOK_ROOM, (), ("book", "booking", "reserve", "reservation", "room", "stay")),
    (IntentType.FAREWELL, ("see you",), ("bye", "goodbye", "farewell")),
    (IntentType.ACKNOWLEDGMENT, ("thank you",), ("thanks", "ok", "okay", "great", "perfect")),
    (IntentType.GREETING, ("good morning", "good evening", "good afternoon"), ("hello", "hi", "hey")),
]

_EMOTION_RULES: list[tuple[ToneEmotion, float, tuple[str, ...], tuple[str, ...]]] = [
    (ToneEmotion.URGENT, 0.9, ("right now",), ("urgent", "asap", "immediately", "emergency")),
    (ToneEmotion.ANGRY, 0.8, (), ("angry", "furious", "worst", "unacceptable", "ridiculous")),
    (ToneEmotion.FRUSTRATED, 0.7, ("not working",), ("problem", "issue", "broken", "frustrated", "again")),
    (ToneEmotion.CONFUSED, 0.4, ("don't understand", "not sure"), ("confused", "confusing")),
    (ToneEmotion.CONCERNED, 0.5, (), ("worried", "concerned")),
    (ToneEmotion.GRATEFUL, 0.2, ("thank you",), ("thanks", "appreciate")),
    (ToneEmotion.HAPPY, 0.2, (), ("great", "wonderful", "perfect", "love", "hello", "hi")),
]

_SENTIMENT = {
    ToneEmotion.HAPPY: ToneSentiment.POSITIVE,
    ToneEmotion.GRATEFUL: ToneSentiment.POSITIVE,
    ToneEmotion.FRUSTRATED: ToneSentiment.NEGATIVE,
    ToneEmotion.ANGRY: ToneSentiment.NEGATIVE,
    ToneEmotion.CONCERNED: ToneSentiment.NEGATIVE,
}


def _matches(lower: str, words: set[str], phrases: tuple[str, ...], tokens: tuple[str, ...]) -> bool:
    return any(p in lower for p in phrases) or any(t in words for t in tokens)


def _to_int(raw: str) -> int:
    return int(raw) if raw.isdigit() else _NUMBER_WORDS[raw]


def extract_entities(lower: str) -> dict[str, Any]:
    """Pull booking details (guests, beds, nights, check-in, room type) out of the text."""
    entities: dict[str, Any] = {}
    if m := _GUESTS_RE.search(lower):
        entities["guests"] = _to_int(m.group(1))
    if m := _BEDS_RE.search(lower):
        entities["beds"] = _to_int(m.group(1))
        if m.group(2):
            entities["bed_type"] = m.group(2)
    if m := _NIGHTS_RE.search(lower):
        entities["nights"] = _to_int(m.group(1))
    if "tonight" in lower:
        entities["check_in"] = "tonight"
    elif "tomorrow" in lower:
        entities["check_in"] = "tomorrow"
    if m := _ROOM_TYPE_RE.search(lower):
        entities["room_type"] = m.group(1)
    return entities


def classify_text(transcript: str, model_used: str = STUB_CLASSIFIER_MODEL,
                  latency_ms: float = 0.0) -> ClassificationResult:
    """Keyword classifier for intent and tone."""
    lower = transcript.lower()
    words = set(re.findall(r"[a-z']+", lower))

    intent_type = IntentType.UNCLEAR
    for candidate, phrases, tokens in _INTENT_RULES:
        if _matches(lower, words, phrases, tokens):
            intent_type = candidate
            break

    emotion, urgency = ToneEmotion.NEUTRAL, 0.3
    for candidate, score, phrases, tokens in _EMOTION_RULES:
        if _matches(lower, words, phrases, tokens):
            emotion, urgency = candidate, score
            break

    politeness = 0.9 if ("please" in words or "thank" in words or "thanks" in words) else 0.7
    if emotion == ToneEmotion.ANGRY:
        politeness = 0.3

    return ClassificationResult(
        intent=Intent(
            type=intent_type,
            confidence=0.3 if intent_type == IntentType.UNCLEAR else 0.85,
            entities=extract_entities(lower),
            model_used=model_used,
            latency_ms=latency_ms,
        ),
        tone=Tone(
            emotion=emotion,
            sentiment=_SENTIMENT.get(emotion, ToneSentiment.NEUTRAL),
            urgency_score=urgency,
            politeness_score=politeness,
            confidence=0.8,
            model_used=model_used,
            latency_ms=latency_ms,
        ),
    )


class StubClassificationAdapter(_FailureInjector, ClassificationAdapter):
    provider = "stub"
    model = STUB_CLASSIFIER_MODEL

    def __init__(self, config: StubConfig, fail_on_calls: Iterable[int] = ()):
        super().__init__(fail_on_calls)
        self.config = config

    async def classify(self, transcript: str, history: list[ConversationMessage]) -> ClassificationResult:
        await _pause(self.config, self.config.classification_ms)
        self._next_call("classification")
        result = classify_text(transcript, latency_ms=self.config.classification_ms)
        logger.debug(
            "stub_classified", intent=result.intent.type.value,
            emotion=result.tone.emotion.value, entities=result.intent.entities,
        )
        return result


# ══════════════════════════════════════════════════════════════
#  GENERATION
# ══════════════════════════════════════════════════════════════

_CANNED_RESPONSES: dict[IntentType, str] = {
    IntentType.GREETING: "Hello! Welcome to {name}. How can I help you today?",
    IntentType.BOOK_ROOM: "Great choice! Let me get that booked for you right away. What dates would you like?",
    IntentType.CHECK_AVAILABILITY: "We have several rooms available for those dates. Would you like a standard or deluxe room?",
    IntentType.ASK_AMENITIES: "{name} offers {amenities}.",
    IntentType.ASK_PRICING: "Our rooms start at competitive nightly rates. Which dates are you considering?",
    IntentType.ASK_HOURS: "Check-in is at {check_in} and check-out is at {check_out}.",
    IntentType.REPORT_ISSUE: "I'm so sorry about that. I'll have someone look into it right away.",
    IntentType.TRANSFER_TO_HUMAN: "Of course. Let me connect you with a member of our team.",
    IntentType.ACKNOWLEDGMENT: "You're very welcome. Is there anything else I can help you with?",
    IntentType.FAREWELL: "Thank you for calling {name}. Have a wonderful day!",
}
_FALLBACK_RESPONSE = "I'd be happy to help with that. Could you tell me a little more?"


def _render_response(request: DialogueRequest) -> str:
    profile = request.profile
    template = _CANNED_RESPONSES.get(request.intent.type, _FALLBACK_RESPONSE)
    amenities = ", ".join(profile.amenities) if profile.amenities else "a range of amenities for our guests"
    return template.format(
        name=profile.name,
        amenities=amenities,
        check_in=profile.policies.get("check_in", "3 PM"),
        check_out=profile.policies.get("check_out", "11 AM"),
    )


class StubGenerationAdapter(_FailureInjector, GenerationAdapter):
    provider = "stub"
    model = STUB_LLM_MODEL

    def __init__(self, config: StubConfig, fail_on_calls: Iterable[int] = ()):
        super().__init__(fail_on_calls)
        self.config = config

    def stream(self, request: DialogueRequest) -> TokenStream:
        return TokenStream(lambda s: self._tokens(s, request), provider=self.provider, model=self.model)

    async def _tokens(self, stream: TokenStream, request: DialogueRequest):
        self._next_call("generation")
        words = _render_response(request).split(" ")
        per_word = self.config.generation_ms / len(words)
        stream.reported_latency_ms = self.config.generation_ms
        stream.reported_first_item_ms = per_word
        for word in words:
            await _pause(self.config, per_word)
            yield word + " "


# ══════════════════════════════════════════════════════════════
#  SYNTHESIS
# ══════════════════════════════════════════════════════════════

class StubSynthesisAdapter(_FailureInjector, SynthesisAdapter):
    """Silent PCM16 chunks, one per ~20 characters of text."""

    provider = "stub"
    model = "stub-tts"

    def __init__(self, config: StubConfig, sample_rate: int = 24000, fail_on_calls: Iterable[int] = ()):
        super().__init__(fail_on_calls)
        self.config = config
        self.sample_rate = sample_rate

    def stream(self, request: SynthesisRequest) -> AudioStream:
        return AudioStream(lambda s: self._chunks(s, request), provider=self.provider, model=self.model)

    async def _chunks(self, stream: AudioStream, request: SynthesisRequest):
        self._next_call("synthesis")
        count = max(1, math.ceil(len(request.text) / STUB_CHARS_PER_CHUNK))
        per_chunk = self.config.synthesis_ms / count
        stream.reported_latency_ms = self.config.synthesis_ms
        stream.reported_first_item_ms = per_chunk
        for i in range(count):
            await _pause(self.config, per_chunk)
            yield AudioChunk(
                data=bytes(STUB_CHUNK_BYTES),
                sample_rate=self.sample_rate,
                flushed=(i == count - 1),
            )


# ══════════════════════════════════════════════════════════════
#  VAD
# ══════════════════════════════════════════════════════════════

class StubVADAdapter(VADAdapter):
    """Reports silence unless results have been scripted with script()."""

    provider = "stub"

    def __init__(self):
        self._script: deque[VADResult] = deque()

    def script(self, *results: VADResult) -> None:
        self._script.extend(results)

    async def process(self, frame: bytes) -> VADResult:
        if self._script:
            return self._script.popleft()
        return VADResult(speaking=False, confidence=0.0)
