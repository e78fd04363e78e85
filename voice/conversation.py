"""
Conversation State Machine — one live voice session.

Phases:
    greeting -> listening -> classifying -> generating -> speaking -> transferring -> ended
plus a listening re-entry from generating/speaking on barge-in. `ended`
is only reached through end_session().

Entry point for raw audio (submit_audio) and exit point for output
events (the EventChannel). Owns the phase, the message history and the
barge-in cancellation; turns themselves run in the TurnCoordinator.
"""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Optional

import structlog

from config.settings import VoiceSettings
from models.schemas import (
    BusinessProfile,
    Conversation,
    ConversationChannel,
    ConversationMessage,
    ConversationPhase,
    IntentType,
    TranscriptEvent,
    Utterance,
    UtteranceRole,
    VADResult,
    utcnow,
)
from voice.adapters.base import AdapterSet
from voice.audio import AudioFrameBuffer
from voice.errors import BufferOverflow, ConnectionClosed
from voice.events import EventChannel, connected_event, error_event, transcript_event
from voice.metrics import MetricsCollector
from voice.turn import TurnCoordinator, TurnOutcome

logger = structlog.get_logger()

INTERRUPTIBLE = {ConversationPhase.GENERATING, ConversationPhase.SPEAKING}
ACCEPTING = {ConversationPhase.GREETING, ConversationPhase.LISTENING, ConversationPhase.TRANSFERRING}


class ConversationStateMachine:
    """
    Usage:
        session = ConversationStateMachine(adapters, collector, settings, profile)
        await session.start()
        session.submit_audio(frame)          # from the transport, never blocks
        async for event in session.events:   # to the transport
            ...
        await session.end_session()
    """

    def __init__(
        self,
        adapters: AdapterSet,
        collector: MetricsCollector,
        settings: VoiceSettings,
        profile: BusinessProfile = None,
        channel: ConversationChannel = ConversationChannel.WEB,
        conversation_id: Optional[str] = None,
    ):
        self.adapters = adapters
        self.collector = collector
        self.settings = settings
        conversation_kwargs: dict[str, Any] = {"channel": channel, "profile": profile or BusinessProfile()}
        if conversation_id:
            conversation_kwargs["id"] = conversation_id
        self.conversation = Conversation(**conversation_kwargs)
        self.events = EventChannel(self.conversation.id)
        self.coordinator = TurnCoordinator(
            self.conversation.id, adapters, collector, self.events, settings, self.conversation.profile,
        )

        self.partial_transcript: str = ""
        self.outcomes: list[TurnOutcome] = []
        self.barge_ins: int = 0
        self._audio = AudioFrameBuffer(settings.audio.queue_size)
        self._pending: deque[TranscriptEvent] = deque()
        self._turn_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._end_task: Optional[asyncio.Task] = None
        self._teardown_done = asyncio.Event()
        self._started = False

    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def phase(self) -> ConversationPhase:
        return self.conversation.phase

    @property
    def ended(self) -> bool:
        return self.conversation.phase == ConversationPhase.ENDED

    @property
    def dropped_frames(self) -> int:
        return self._audio.dropped_frames

    @property
    def turn_in_flight(self) -> bool:
        return self._turn_task is not None

    @property
    def queued_transcripts(self) -> int:
        return len(self._pending)

    def _set_phase(self, phase: ConversationPhase) -> None:
        previous = self.conversation.phase
        if previous == phase:
            return
        if previous == ConversationPhase.ENDED:
            logger.debug("phase_change_after_end_ignored", conversation_id=self.id, phase=phase.value)
            return
        self.conversation.phase = phase
        logger.debug("conversation_phase", conversation_id=self.id, previous=previous.value, phase=phase.value)

    # ══════════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Connect adapters, start the audio pump and announce the session."""
        if self._started:
            return
        self._started = True
        self.collector.start_conversation(self.id)

        if self.settings.enable_backchanneling:
            logger.warning("backchanneling_not_supported", conversation_id=self.id)

        transcription = self.adapters.transcription
        transcription.on_transcript(self.handle_transcript)
        transcription.on_closed(self.on_connection_closed)
        await transcription.connect(self.id)
        await self.adapters.vad.load()
        self._pump_task = asyncio.create_task(self._pump_audio())

        self.events.emit(connected_event(self.id))
        self._set_phase(ConversationPhase.LISTENING)
        logger.info(
            "conversation_started",
            conversation_id=self.id,
            channel=self.conversation.channel.value,
            mode=self.adapters.mode,
            profile=self.conversation.profile.name,
        )

    async def end_session(self, reason: str = "client_closed") -> None:
        """
        Cancel any in-flight turn, move to ended and seal the conversation.
        The turn is sealed before adapter connections are released, and no
        transcript callback fires afterwards.
        """
        if self.ended:
            await self._teardown_done.wait()
            return
        self.coordinator.cancel_current("session_end")
        self._pending.clear()
        self._set_phase(ConversationPhase.ENDED)
        try:
            await self._teardown(reason)
        finally:
            self._teardown_done.set()

    async def _teardown(self, reason: str) -> None:
        if self._turn_task is not None:
            await asyncio.gather(self._turn_task, return_exceptions=True)

        self._audio.close()
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)

        await self.adapters.transcription.disconnect()
        for adapter in (self.adapters.classification, self.adapters.generation, self.adapters.synthesis):
            aclose = getattr(adapter, "aclose", None)
            if aclose is not None:
                await aclose()

        self.conversation.ended_at = utcnow()
        self.collector.end_conversation(self.id)
        self.events.close()
        logger.info(
            "conversation_ended",
            conversation_id=self.id,
            reason=reason,
            turns=len(self.outcomes),
            barge_ins=self.barge_ins,
            dropped_frames=self.dropped_frames,
            duration_s=self.conversation.duration_seconds,
        )

    async def wait_idle(self) -> None:
        """Wait until no turn is in flight and no final transcript is queued."""
        while self._turn_task is not None:
            await asyncio.wait({self._turn_task})

    def update_profile(self, profile: BusinessProfile) -> None:
        """Replace the tenant context; takes effect from the next turn."""
        self.conversation.profile = profile
        self.coordinator.profile = profile
        logger.info("conversation_profile_updated", conversation_id=self.id, profile=profile.name)

    # ══════════════════════════════════════════════════════════════
    #  AUDIO IN
    # ══════════════════════════════════════════════════════════════

    def submit_audio(self, frame: bytes) -> bool:
        """
        Enqueue one inbound frame without blocking. When the buffer is
        full the oldest frame is dropped; returns False in that case.
        """
        if self.ended:
            return False
        if self._audio.put(frame):
            return True
        overflow = BufferOverflow(self._audio.capacity)
        logger.warning(
            "audio_frame_dropped",
            conversation_id=self.id,
            error=overflow.describe(),
            dropped_frames=self._audio.dropped_frames,
        )
        return False

    async def _pump_audio(self) -> None:
        threshold = self.settings.audio.barge_in_threshold
        while True:
            frame = await self._audio.get()
            if frame is None:
                return
            self.adapters.transcription.send_audio(frame)
            vad: VADResult = await self.adapters.vad.process(frame)
            if vad.speaking and vad.confidence >= threshold and self.phase in INTERRUPTIBLE:
                self.on_barge_in()

    # ══════════════════════════════════════════════════════════════
    #  TRANSCRIPTS
    # ══════════════════════════════════════════════════════════════

    def handle_transcript(self, transcript: TranscriptEvent) -> None:
        if self.ended:
            return
        self.events.emit(transcript_event(transcript))
        if transcript.is_final:
            self.on_final_transcript(transcript)
        else:
            self.on_interim_transcript(transcript.text)

    def on_interim_transcript(self, text: str) -> None:
        """Display-only partial; never starts a turn."""
        self.partial_transcript = text

    def on_final_transcript(self, transcript: TranscriptEvent) -> None:
        """Start a turn, or queue the transcript behind the one in flight."""
        if self.ended:
            return
        self.partial_transcript = ""
        text = transcript.text.strip()
        if not text:
            return

        utterance = Utterance(
            conversation_id=self.id,
            role=UtteranceRole.USER,
            confidence=transcript.confidence,
        )
        utterance.finalize(text=text)
        self.conversation.utterances.append(utterance)

        if self._turn_task is not None or self.phase not in ACCEPTING:
            self._pending.append(transcript)
            logger.info("final_transcript_queued", conversation_id=self.id, queued=len(self._pending))
            return

        self._set_phase(ConversationPhase.CLASSIFYING)
        self._turn_task = asyncio.create_task(self._process_turns(transcript))

    async def _process_turns(self, transcript: TranscriptEvent) -> None:
        current: Optional[TranscriptEvent] = transcript
        try:
            while current is not None and not self.ended:
                await self._run_turn(current)
                current = self._pending.popleft() if self._pending else None
                if current is not None:
                    self._set_phase(ConversationPhase.CLASSIFYING)
        except ConnectionClosed as e:
            self.on_connection_closed(e)
        finally:
            self._turn_task = None

    def on_connection_closed(self, error: ConnectionClosed) -> None:
        """A provider or transport connection is gone: report it and end the session."""
        if self.ended or self._end_task is not None:
            return
        logger.error("conversation_connection_closed", conversation_id=self.id, stage=error.stage, error=str(error))
        self.events.emit(error_event(error.describe()))
        self._end_task = asyncio.get_running_loop().create_task(self.end_session(reason="connection_closed"))
        self._end_task.add_done_callback(self._log_end_failure)

    def _log_end_failure(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("conversation_end_failed", conversation_id=self.id, error=str(task.exception()))

    async def _run_turn(self, transcript: TranscriptEvent) -> None:
        history = list(self.conversation.history)
        try:
            outcome = await self.coordinator.run_turn(transcript, history, on_phase=self._on_turn_phase)
        except ConnectionClosed:
            raise
        except Exception as e:
            logger.exception("turn_crashed", conversation_id=self.id, error=str(e))
            self.events.emit(error_event(f"Internal error: {type(e).__name__}"))
            self._set_phase(ConversationPhase.LISTENING)
            return

        self.outcomes.append(outcome)
        self.conversation.history.append(ConversationMessage(
            role=UtteranceRole.USER,
            content=transcript.text.strip(),
            intent=outcome.classification.intent.type if outcome.classification else None,
            tone=outcome.classification.tone.emotion if outcome.classification else None,
        ))
        if outcome.utterance is not None:
            self.conversation.utterances.append(outcome.utterance)
        if outcome.completed:
            self.conversation.history.append(ConversationMessage(
                role=UtteranceRole.ASSISTANT,
                content=outcome.response.text,
            ))

        if self.ended or outcome.cancelled:
            return
        if outcome.classification and outcome.classification.intent.type == IntentType.TRANSFER_TO_HUMAN:
            self._set_phase(ConversationPhase.TRANSFERRING)
        else:
            self._set_phase(ConversationPhase.LISTENING)

    def _on_turn_phase(self, phase: ConversationPhase) -> None:
        if self.ended:
            return
        self._set_phase(phase)

    # ══════════════════════════════════════════════════════════════
    #  BARGE-IN
    # ══════════════════════════════════════════════════════════════

    def on_barge_in(self) -> bool:
        """
        Interrupt the assistant. Synchronous: the phase is back to
        listening before this returns, ahead of any further stage call.
        """
        if self.phase not in INTERRUPTIBLE:
            return False
        self._set_phase(ConversationPhase.LISTENING)
        active = self.coordinator.cancel_current("barge_in")
        if active is not None and active.utterance is not None and not active.utterance.is_final:
            active.utterance.interrupted = True
        self.barge_ins += 1
        logger.info(
            "barge_in",
            conversation_id=self.id,
            turn_id=active.turn_id if active else None,
        )
        return True

    # ══════════════════════════════════════════════════════════════
    #  INSPECTION
    # ══════════════════════════════════════════════════════════════

    def snapshot(self) -> dict[str, Any]:
        return {
            "conversation_id": self.id,
            "channel": self.conversation.channel.value,
            "phase": self.phase.value,
            "mode": self.adapters.mode,
            "started_at": self.conversation.started_at.isoformat(),
            "turns": len(self.outcomes),
            "turn_in_flight": self.turn_in_flight,
            "queued_transcripts": self.queued_transcripts,
            "partial_transcript": self.partial_transcript,
            "barge_ins": self.barge_ins,
            "dropped_frames": self.dropped_frames,
        }
