"""
Core data models for the voice orchestrator.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConversationChannel(str, Enum):
    WEB = "web"
    PHONE = "phone"
    DEMO = "demo"


class ConversationPhase(str, Enum):
    GREETING = "greeting"
    LISTENING = "listening"
    CLASSIFYING = "classifying"
    GENERATING = "generating"
    SPEAKING = "speaking"
    TRANSFERRING = "transferring"
    ENDED = "ended"


class UtteranceRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class IntentType(str, Enum):
    # Booking & reservations
    BOOK_ROOM = "book_room"
    MODIFY_RESERVATION = "modify_reservation"
    CANCEL_RESERVATION = "cancel_reservation"
    CHECK_AVAILABILITY = "check_availability"

    # Information requests
    ASK_AMENITIES = "ask_amenities"
    ASK_HOURS = "ask_hours"
    ASK_LOCATION = "ask_location"
    ASK_PRICING = "ask_pricing"
    ASK_RECOMMENDATIONS = "ask_recommendations"

    # Support & services
    REPORT_ISSUE = "report_issue"
    REQUEST_SERVICE = "request_service"
    BILLING_INQUIRY = "billing_inquiry"
    TRANSFER_TO_HUMAN = "transfer_to_human"
    META_FEEDBACK = "meta_feedback"

    # Conversation flow
    GREETING = "greeting"
    ACKNOWLEDGMENT = "acknowledgment"
    FAREWELL = "farewell"
    UNCLEAR = "unclear"


class ToneEmotion(str, Enum):
    NEUTRAL = "neutral"
    HAPPY = "happy"
    FRUSTRATED = "frustrated"
    CONFUSED = "confused"
    URGENT = "urgent"
    ANGRY = "angry"
    GRATEFUL = "grateful"
    CONCERNED = "concerned"


class ToneSentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


# ──────────────────────────────────────────────────────────────
#  Session context
# ──────────────────────────────────────────────────────────────

class BusinessProfile(BaseModel):
    """Tenant context supplied at session setup."""
    name: str = "Our Hotel"
    amenities: list[str] = []
    policies: dict[str, Any] = {}


class ConversationMessage(BaseModel):
    """One entry of the history passed to classification and generation."""
    role: UtteranceRole
    content: str
    intent: Optional[IntentType] = None
    tone: Optional[ToneEmotion] = None
    timestamp: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Utterances
# ──────────────────────────────────────────────────────────────

class Utterance(BaseModel):
    """One contiguous spoken segment attributed to a single role."""
    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: UtteranceRole
    text: str = ""
    confidence: Optional[float] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    is_final: bool = False
    interrupted: bool = False

    def finalize(self, text: Optional[str] = None, interrupted: bool = False) -> None:
        if self.is_final:
            raise ValueError(f"Utterance {self.id} is already final")
        if text is not None:
            self.text = text
        self.interrupted = interrupted
        self.ended_at = utcnow()
        self.is_final = True


# ──────────────────────────────────────────────────────────────
#  Classification
# ──────────────────────────────────────────────────────────────

class Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: IntentType
    confidence: float = Field(ge=0.0, le=1.0)
    entities: dict[str, Any] = {}
    model_used: str = ""
    latency_ms: float = 0.0


class Tone(BaseModel):
    model_config = ConfigDict(frozen=True)

    emotion: ToneEmotion = ToneEmotion.NEUTRAL
    sentiment: ToneSentiment = ToneSentiment.NEUTRAL
    urgency_score: float = Field(default=0.3, ge=0.0, le=1.0)
    politeness_score: float = Field(default=0.8, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    model_used: str = ""
    latency_ms: float = 0.0


class ClassificationResult(BaseModel):
    """Intent and tone are always produced together."""
    model_config = ConfigDict(frozen=True)

    intent: Intent
    tone: Tone
    degraded: bool = False
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def latency_ms(self) -> float:
        return max(self.intent.latency_ms, self.tone.latency_ms)

    @classmethod
    def unclear(cls, model_used: str = "fallback", latency_ms: float = 0.0) -> "ClassificationResult":
        """Low-confidence substitute used when classification fails."""
        return cls(
            intent=Intent(
                type=IntentType.UNCLEAR, confidence=0.0,
                model_used=model_used, latency_ms=latency_ms,
            ),
            tone=Tone(
                emotion=ToneEmotion.NEUTRAL, sentiment=ToneSentiment.NEUTRAL,
                urgency_score=0.3, politeness_score=0.8, confidence=0.0,
                model_used=model_used, latency_ms=latency_ms,
            ),
            degraded=True,
        )


# ──────────────────────────────────────────────────────────────
#  Stage payloads
# ──────────────────────────────────────────────────────────────

class TranscriptEvent(BaseModel):
    text: str
    is_final: bool
    confidence: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)
    latency_ms: float = 0.0          # speech start → this result


class VADResult(BaseModel):
    speaking: bool
    confidence: float
    timestamp: datetime = Field(default_factory=utcnow)


class AudioChunk(BaseModel):
    id: str = Field(default_factory=new_id)
    data: bytes
    format: str = "pcm16"
    sample_rate: int = 24000
    channels: int = 1
    timestamp: datetime = Field(default_factory=utcnow)
    flushed: bool = False            # true only on the terminal chunk


class DialogueRequest(BaseModel):
    user_message: str
    intent: Intent
    tone: Tone
    profile: BusinessProfile = Field(default_factory=BusinessProfile)
    history: list[ConversationMessage] = []


class DialogueResponse(BaseModel):
    text: str
    latency_ms: float
    time_to_first_token_ms: Optional[float] = None
    total_tokens: int = 0
    model: str = ""
    provider: str = ""


class ProsodyHints(BaseModel):
    speed: float = Field(default=1.0, ge=0.5, le=2.0)
    emotion: Optional[ToneEmotion] = None
    pitch_shift: Optional[float] = None


class SynthesisRequest(BaseModel):
    text: str
    voice_id: str = ""
    prosody: ProsodyHints = Field(default_factory=ProsodyHints)


class SynthesisResult(BaseModel):
    latency_ms: float
    chunk_count: int = 0
    byte_count: int = 0
    provider: str = ""


# ──────────────────────────────────────────────────────────────
#  Conversation
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    """A single live session; mutated only by the state machine."""
    id: str = Field(default_factory=new_id)
    channel: ConversationChannel = ConversationChannel.WEB
    phase: ConversationPhase = ConversationPhase.GREETING
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    history: list[ConversationMessage] = []
    utterances: list[Utterance] = []
    profile: BusinessProfile = Field(default_factory=BusinessProfile)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()
