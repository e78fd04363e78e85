"""
Turn Pipeline Coordinator — one final transcript through to audio.

Sequencing:
    classification (always awaited fully)
      -> generation (streamed)
      -> synthesis (after generation, or per clause in speculative mode)

Failure policy:
- classification failure: substitute unclear/neutral, record, continue
- generation failure: record, emit error, no further synthesis (queued clauses are dropped)
- synthesis failure: record, emit error, text-only response stands

Every started turn is sealed in the collector exactly once, in a finally
block, whatever happens (failure, barge-in cancellation, session close).
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from config.settings import VoiceSettings
from models.schemas import (
    AudioChunk,
    BusinessProfile,
    ClassificationResult,
    ConversationMessage,
    ConversationPhase,
    DialogueRequest,
    DialogueResponse,
    ProsodyHints,
    SynthesisRequest,
    SynthesisResult,
    TranscriptEvent,
    Utterance,
    UtteranceRole,
)
from voice.adapters.base import AdapterSet
from voice.cancellation import CancellationToken, consume_stage, run_stage
from voice.chunking import ClauseChunker
from voice.errors import (
    ClassificationDegraded,
    ConnectionClosed,
    GenerationFailure,
    SynthesisFailure,
    TurnCancelled,
    VoiceError,
)
from voice.events import (
    EventChannel,
    audio_chunk_event,
    classification_event,
    error_event,
    response_event,
)
from voice.metrics import MetricsCollector, Stage, TurnMetrics
from voice.prosody import prosody_for_tone

logger = structlog.get_logger()

PhaseCallback = Callable[[ConversationPhase], None]


@dataclass
class ActiveTurn:
    """The turn currently in flight for a conversation."""
    turn_id: str
    transcript: str
    token: CancellationToken = field(default_factory=CancellationToken)
    utterance: Optional[Utterance] = None


@dataclass
class TurnOutcome:
    turn_id: str
    transcript: str
    classification: Optional[ClassificationResult] = None
    response: Optional[DialogueResponse] = None
    synthesis: Optional[SynthesisResult] = None
    utterance: Optional[Utterance] = None
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    metrics: Optional[TurnMetrics] = None

    @property
    def completed(self) -> bool:
        return self.response is not None and not self.cancelled

    @property
    def text_only(self) -> bool:
        return self.completed and self.synthesis is None


@dataclass
class _SynthesisTally:
    latency_ms: float = 0.0
    chunk_count: int = 0
    byte_count: int = 0
    clauses: int = 0
    failed: bool = False


class TurnCoordinator:
    """
    Drives turns for one conversation session. At most one turn is in
    flight; cancel_current() is how barge-in and session close stop it.
    """

    def __init__(
        self,
        conversation_id: str,
        adapters: AdapterSet,
        collector: MetricsCollector,
        events: EventChannel,
        settings: VoiceSettings,
        profile: BusinessProfile = None,
    ):
        self.conversation_id = conversation_id
        self.adapters = adapters
        self.collector = collector
        self.events = events
        self.settings = settings
        self.profile = profile or BusinessProfile()
        self.current: Optional[ActiveTurn] = None

    @property
    def busy(self) -> bool:
        return self.current is not None

    def cancel_current(self, reason: str = "") -> Optional[ActiveTurn]:
        """Set the in-flight turn's token. Synchronous; returns the turn that was cancelled."""
        turn = self.current
        if turn is None:
            return None
        turn.token.cancel(reason)
        logger.info("turn_cancel_requested", conversation_id=self.conversation_id, turn_id=turn.turn_id, reason=reason)
        return turn

    # ══════════════════════════════════════════════════════════════
    #  TURN
    # ══════════════════════════════════════════════════════════════

    async def run_turn(
        self,
        transcript: TranscriptEvent,
        history: list[ConversationMessage],
        on_phase: Optional[PhaseCallback] = None,
    ) -> TurnOutcome:
        if self.current is not None:
            raise RuntimeError(f"Turn {self.current.turn_id} already in flight for {self.conversation_id}")

        turn_id = self.collector.start_turn(self.conversation_id, transcript.text)
        turn = ActiveTurn(turn_id=turn_id, transcript=transcript.text)
        self.current = turn
        outcome = TurnOutcome(turn_id=turn_id, transcript=transcript.text)
        log = logger.bind(conversation_id=self.conversation_id, turn_id=turn_id)

        def phase(value: ConversationPhase) -> None:
            if on_phase is not None and not turn.token.cancelled:
                on_phase(value)

        try:
            self.collector.record_stage(
                turn_id, Stage.TRANSCRIPTION, transcript.latency_ms,
                confidence=transcript.confidence,
                provider=self.adapters.transcription.provider,
            )

            phase(ConversationPhase.CLASSIFYING)
            classification = await self._classify(turn, transcript.text, history, outcome)
            outcome.classification = classification
            turn.token.raise_if_cancelled("classification")
            self.events.emit(classification_event(classification))

            phase(ConversationPhase.GENERATING)
            turn.utterance = Utterance(conversation_id=self.conversation_id, role=UtteranceRole.ASSISTANT)
            outcome.utterance = turn.utterance
            request = DialogueRequest(
                user_message=transcript.text,
                intent=classification.intent,
                tone=classification.tone,
                profile=self.profile,
                history=history,
            )
            prosody = prosody_for_tone(classification.tone, self.settings.enable_prosody_tuning)

            if self.settings.enable_speculative_tts:
                response = await self._generate_speculative(turn, request, prosody, outcome, phase)
            else:
                response = await self._generate(turn, request, outcome)
                if response is not None:
                    self.events.emit(response_event(response))
                    phase(ConversationPhase.SPEAKING)
                    await self._synthesize(turn, response.text, prosody, outcome)
                    turn.token.raise_if_cancelled("synthesis")

            if response is not None:
                outcome.response = response
                if not turn.utterance.is_final:
                    turn.utterance.finalize(text=response.text)
            else:
                outcome.utterance = None

            log.info(
                "turn_completed",
                intent=classification.intent.type.value,
                text_only=outcome.text_only,
                errors=len(outcome.errors),
            )

        except TurnCancelled as e:
            outcome.cancelled = True
            self.collector.mark_cancelled(turn_id)
            log.info("turn_cancelled", stage=e.stage, reason=turn.token.reason)

        except ConnectionClosed:
            outcome.cancelled = True
            raise

        finally:
            if outcome.cancelled and turn.utterance is not None and not turn.utterance.is_final:
                turn.utterance.finalize(interrupted=True)
            self.current = None
            outcome.metrics = self.collector.complete_turn(turn_id)

        return outcome

    # ══════════════════════════════════════════════════════════════
    #  STAGES
    # ══════════════════════════════════════════════════════════════

    def _fail(self, turn: ActiveTurn, outcome: TurnOutcome, error: VoiceError, **context) -> None:
        message = error.describe()
        outcome.errors.append(message)
        self.collector.record_error(turn.turn_id, message)
        self.events.emit(error_event(message))
        logger.warning(
            "turn_stage_failed",
            conversation_id=self.conversation_id,
            turn_id=turn.turn_id,
            stage=error.stage,
            error=str(error),
            error_type=type(error).__name__,
            **context,
        )

    async def _classify(
        self,
        turn: ActiveTurn,
        text: str,
        history: list[ConversationMessage],
        outcome: TurnOutcome,
    ) -> ClassificationResult:
        adapter = self.adapters.classification
        started = time.monotonic()
        try:
            result = await run_stage(
                "classification",
                adapter.classify(text, history),
                token=turn.token,
                timeout_s=self.settings.timeouts.classification_s,
                failure=ClassificationDegraded,
            )
            latency_ms = result.latency_ms
        except ConnectionClosed:
            raise
        except VoiceError as e:
            self._fail(turn, outcome, e, fallback="unclear")
            latency_ms = (time.monotonic() - started) * 1000
            result = ClassificationResult.unclear(model_used="fallback", latency_ms=latency_ms)

        self.collector.record_stage(
            turn.turn_id, Stage.CLASSIFICATION, latency_ms,
            intent_type=result.intent.type.value,
            intent_confidence=result.intent.confidence,
            emotion=result.tone.emotion.value,
            sentiment=result.tone.sentiment.value,
            urgency=result.tone.urgency_score,
            politeness=result.tone.politeness_score,
            provider=adapter.provider,
            degraded=result.degraded,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        return result

    async def _generate(self, turn: ActiveTurn, request: DialogueRequest, outcome: TurnOutcome) -> Optional[DialogueResponse]:
        stream = self.adapters.generation.stream(request)

        def on_token(token: str) -> None:
            turn.utterance.text += token

        try:
            await consume_stage(
                "generation", stream, on_token,
                token=turn.token,
                timeout_s=self.settings.timeouts.generation_s,
                failure=GenerationFailure,
            )
        except ConnectionClosed:
            raise
        except VoiceError as e:
            self._fail(turn, outcome, e)
            return None

        response = stream.response()
        self._record_generation(turn, response)
        return response

    def _record_generation(self, turn: ActiveTurn, response: DialogueResponse) -> None:
        self.collector.record_stage(
            turn.turn_id, Stage.GENERATION, response.latency_ms,
            provider=response.provider,
            model=response.model,
            total_tokens=response.total_tokens,
            response_length=len(response.text),
            time_to_first_token_ms=response.time_to_first_token_ms,
        )

    async def _synthesize(self, turn: ActiveTurn, text: str, prosody: ProsodyHints, outcome: TurnOutcome) -> None:
        tally = _SynthesisTally()
        await self._synthesize_clause(turn, text, prosody, outcome, tally)
        self._record_synthesis(turn, outcome, tally, speculative=False)

    async def _synthesize_clause(
        self,
        turn: ActiveTurn,
        text: str,
        prosody: ProsodyHints,
        outcome: TurnOutcome,
        tally: _SynthesisTally,
    ) -> None:
        stream = self.adapters.synthesis.stream(
            SynthesisRequest(text=text, voice_id=self.settings.providers.cartesia_voice_id, prosody=prosody),
        )

        def on_chunk(chunk: AudioChunk) -> None:
            self.events.emit(audio_chunk_event(chunk))

        try:
            await consume_stage(
                "synthesis", stream, on_chunk,
                token=turn.token,
                timeout_s=self.settings.timeouts.synthesis_s,
                failure=SynthesisFailure,
            )
        except ConnectionClosed:
            raise
        except VoiceError as e:
            tally.failed = True
            self._fail(turn, outcome, e, fallback="text_only")
            return

        result = stream.result()
        tally.latency_ms += result.latency_ms
        tally.chunk_count += result.chunk_count
        tally.byte_count += result.byte_count
        tally.clauses += 1

    def _record_synthesis(self, turn: ActiveTurn, outcome: TurnOutcome, tally: _SynthesisTally, speculative: bool) -> None:
        if tally.failed or tally.clauses == 0:
            return
        outcome.synthesis = SynthesisResult(
            latency_ms=tally.latency_ms,
            chunk_count=tally.chunk_count,
            byte_count=tally.byte_count,
            provider=self.adapters.synthesis.provider,
        )
        self.collector.record_stage(
            turn.turn_id, Stage.SYNTHESIS, tally.latency_ms,
            chunk_count=tally.chunk_count,
            byte_count=tally.byte_count,
            provider=self.adapters.synthesis.provider,
            clauses=tally.clauses,
            speculative=speculative,
        )

    # ══════════════════════════════════════════════════════════════
    #  SPECULATIVE SYNTHESIS
    # ══════════════════════════════════════════════════════════════

    async def _generate_speculative(
        self,
        turn: ActiveTurn,
        request: DialogueRequest,
        prosody: ProsodyHints,
        outcome: TurnOutcome,
        phase: PhaseCallback,
    ) -> Optional[DialogueResponse]:
        """
        Synthesis starts on each complete clause while generation keeps
        streaming. The clause queue and its consumer task are the only
        concurrent region of a turn; both sides share the turn's token.
        """
        chunker = ClauseChunker()
        clauses: asyncio.Queue[Optional[str]] = asyncio.Queue()
        tally = _SynthesisTally()

        async def speak_clauses() -> None:
            while True:
                clause = await clauses.get()
                if clause is None or tally.failed:
                    return
                if tally.clauses == 0:
                    phase(ConversationPhase.SPEAKING)
                await self._synthesize_clause(turn, clause, prosody, outcome, tally)

        def on_token(token: str) -> None:
            turn.utterance.text += token
            for clause in chunker.add_token(token):
                clauses.put_nowait(clause)

        stream = self.adapters.generation.stream(request)
        speaker = asyncio.create_task(speak_clauses())
        try:
            try:
                await consume_stage(
                    "generation", stream, on_token,
                    token=turn.token,
                    timeout_s=self.settings.timeouts.generation_s,
                    failure=GenerationFailure,
                )
            except ConnectionClosed:
                raise
            except VoiceError as e:
                # Queued clauses must not start once generation has failed
                speaker.cancel()
                await asyncio.gather(speaker, return_exceptions=True)
                self._fail(turn, outcome, e)
                self._record_synthesis(turn, outcome, tally, speculative=True)
                return None

            response = stream.response()
            self._record_generation(turn, response)
            self.events.emit(response_event(response))

            if tail := chunker.flush():
                clauses.put_nowait(tail)
            clauses.put_nowait(None)
            await speaker
            turn.token.raise_if_cancelled("synthesis")
            self._record_synthesis(turn, outcome, tally, speculative=True)
            return response
        finally:
            if not speaker.done():
                speaker.cancel()
            await asyncio.gather(speaker, return_exceptions=True)
