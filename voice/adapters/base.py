"""
Streaming stage contracts.

Every adapter, live or simulated, implements one of these. The turn
coordinator and conversation state machine depend only on this module.

- TranscriptionAdapter: connect / send_audio (fire-and-forget) /
  on_transcript(callback) / disconnect (idempotent, silences callbacks)
- ClassificationAdapter: one request/response returning intent + tone
- GenerationAdapter: single-shot generate() and token stream()
- SynthesisAdapter: single-shot synthesize() and chunk stream()
- VADAdapter: per-frame speaking / not-speaking with confidence
"""
from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

import structlog

from models.schemas import (
    AudioChunk,
    ClassificationResult,
    ConversationMessage,
    DialogueRequest,
    DialogueResponse,
    SynthesisRequest,
    SynthesisResult,
    TranscriptEvent,
    VADResult,
)
from voice.errors import ConnectionClosed

logger = structlog.get_logger()

TranscriptCallback = Callable[[TranscriptEvent], None]
ClosedCallback = Callable[[ConnectionClosed], None]


# ══════════════════════════════════════════════════════════════
#  MEASURED STREAMS
# ══════════════════════════════════════════════════════════════

class MeasuredStream:
    """
    Async iterator over a stage's streamed output that times the stream.

    The source factory receives the stream itself so adapters can report
    provider-side figures (latency, token usage) that override the
    locally measured ones. cancel() ends iteration cleanly: once it is
    called no further items are yielded and nothing is raised.
    """

    def __init__(
        self,
        source_factory: Callable[["MeasuredStream"], AsyncIterator[Any]],
        provider: str = "",
        model: str = "",
    ):
        self.provider = provider
        self.model = model
        self.reported_latency_ms: Optional[float] = None
        self.reported_first_item_ms: Optional[float] = None
        self.item_count: int = 0
        self._factory = source_factory
        self._source: Optional[AsyncIterator[Any]] = None
        self._started_at: Optional[float] = None
        self._first_item_at: Optional[float] = None
        self._finished_at: Optional[float] = None
        self._cancelled = False

    def __aiter__(self) -> "MeasuredStream":
        return self

    async def __anext__(self) -> Any:
        if self._cancelled or self._finished_at is not None:
            raise StopAsyncIteration
        if self._source is None:
            self._started_at = time.monotonic()
            self._source = self._factory(self).__aiter__()
        try:
            item = await self._source.__anext__()
        except StopAsyncIteration:
            self._finished_at = time.monotonic()
            raise
        if self._cancelled:
            raise StopAsyncIteration
        if self._first_item_at is None:
            self._first_item_at = time.monotonic()
        self.item_count += 1
        self._observe(item)
        return item

    def _observe(self, item: Any) -> None:
        pass

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished_at is not None

    def cancel(self) -> None:
        self._cancelled = True

    async def aclose(self) -> None:
        self._cancelled = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    @property
    def latency_ms(self) -> float:
        if self.reported_latency_ms is not None:
            return self.reported_latency_ms
        if self._started_at is None:
            return 0.0
        end = self._finished_at or time.monotonic()
        return (end - self._started_at) * 1000

    @property
    def first_item_ms(self) -> Optional[float]:
        if self.reported_first_item_ms is not None:
            return self.reported_first_item_ms
        if self._started_at is None or self._first_item_at is None:
            return None
        return (self._first_item_at - self._started_at) * 1000


class TokenStream(MeasuredStream):
    """Generation token stream; response() is valid once iteration ends."""

    def __init__(self, source_factory, provider: str = "", model: str = ""):
        super().__init__(source_factory, provider, model)
        self.text: str = ""
        self.reported_total_tokens: Optional[int] = None

    def _observe(self, item: str) -> None:
        self.text += item

    @property
    def total_tokens(self) -> int:
        if self.reported_total_tokens is not None:
            return self.reported_total_tokens
        return estimate_tokens(self.text)

    def response(self) -> DialogueResponse:
        return DialogueResponse(
            text=self.text.strip(),
            latency_ms=self.latency_ms,
            time_to_first_token_ms=self.first_item_ms,
            total_tokens=self.total_tokens,
            model=self.model,
            provider=self.provider,
        )


class AudioStream(MeasuredStream):
    """Synthesis chunk stream; the terminal chunk has flushed=True."""

    def __init__(self, source_factory, provider: str = "", model: str = ""):
        super().__init__(source_factory, provider, model)
        self.byte_count: int = 0
        self.flushed: bool = False

    def _observe(self, item: AudioChunk) -> None:
        self.byte_count += len(item.data)
        if item.flushed:
            self.flushed = True

    def result(self) -> SynthesisResult:
        return SynthesisResult(
            latency_ms=self.latency_ms,
            chunk_count=self.item_count,
            byte_count=self.byte_count,
            provider=self.provider,
        )


def estimate_tokens(text: str) -> int:
    """Rough token estimate when the provider reports no usage."""
    words = len(text.split())
    return int(round(words * 1.3))


@dataclass
class SynthesisOutput:
    chunks: list[AudioChunk] = field(default_factory=list)
    result: SynthesisResult = field(default_factory=lambda: SynthesisResult(latency_ms=0.0))


# ══════════════════════════════════════════════════════════════
#  CONTRACTS
# ══════════════════════════════════════════════════════════════

class TranscriptionAdapter(abc.ABC):
    """
    Streaming speech-to-text. Each utterance yields zero or more interim
    results followed by exactly one final result. If the upstream stream
    ends before disconnect(), the on_closed callbacks fire once. After
    disconnect() no callback fires again.
    """

    provider: str = ""

    def __init__(self):
        self._callbacks: list[TranscriptCallback] = []
        self._closed_callbacks: list[ClosedCallback] = []
        self._connected = False
        self._disconnected = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._disconnected

    def on_transcript(self, callback: TranscriptCallback) -> None:
        self._callbacks.append(callback)

    def on_closed(self, callback: ClosedCallback) -> None:
        self._closed_callbacks.append(callback)

    def _emit(self, event: TranscriptEvent) -> None:
        if self._disconnected:
            return
        for callback in list(self._callbacks):
            callback(event)

    def _report_closed(self, error: ConnectionClosed) -> None:
        if self._disconnected or not self._connected:
            return
        self._connected = False
        logger.warning("transcription_stream_lost", provider=self.provider, error=error.describe())
        for callback in list(self._closed_callbacks):
            callback(error)

    @abc.abstractmethod
    async def connect(self, session_id: str) -> None: ...

    @abc.abstractmethod
    def send_audio(self, frame: bytes) -> None: ...

    async def disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        self._callbacks.clear()
        self._closed_callbacks.clear()
        await self._close()

    async def _close(self) -> None:
        pass


class ClassificationAdapter(abc.ABC):
    provider: str = ""
    model: str = ""

    @abc.abstractmethod
    async def classify(
        self, transcript: str, history: list[ConversationMessage],
    ) -> ClassificationResult: ...


class GenerationAdapter(abc.ABC):
    provider: str = ""
    model: str = ""

    @abc.abstractmethod
    def stream(self, request: DialogueRequest) -> TokenStream: ...

    async def generate(self, request: DialogueRequest) -> DialogueResponse:
        stream = self.stream(request)
        async for _ in stream:
            pass
        return stream.response()


class SynthesisAdapter(abc.ABC):
    provider: str = ""
    model: str = ""
    sample_rate: int = 24000

    @abc.abstractmethod
    def stream(self, request: SynthesisRequest) -> AudioStream: ...

    async def synthesize(self, request: SynthesisRequest) -> SynthesisOutput:
        stream = self.stream(request)
        chunks = [chunk async for chunk in stream]
        return SynthesisOutput(chunks=chunks, result=stream.result())


class VADAdapter(abc.ABC):
    provider: str = ""

    async def load(self) -> None:
        pass

    @abc.abstractmethod
    async def process(self, frame: bytes) -> VADResult: ...


@dataclass
class AdapterSet:
    """The concrete adapters chosen for one session."""
    transcription: TranscriptionAdapter
    classification: ClassificationAdapter
    generation: GenerationAdapter
    synthesis: SynthesisAdapter
    vad: VADAdapter
    mode: str = "stub"
