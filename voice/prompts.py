"""
Prompt builders for the classification and generation stages.

The generation prompt carries the tenant profile, voice delivery rules and
a tone adjustment picked from the classified emotion/urgency. The
classification prompt asks for strict JSON covering intent, entities and
the tone dimensions in one call.
"""
from __future__ import annotations

from models.schemas import (
    BusinessProfile,
    ConversationMessage,
    DialogueRequest,
    IntentType,
    Tone,
    ToneEmotion,
    ToneSentiment,
    UtteranceRole,
)


# ══════════════════════════════════════════════════════════════
#  GENERATION
# ══════════════════════════════════════════════════════════════

class VoicePromptBuilder:
    """
    Builds voice-optimized system prompts that produce natural speech.

    Responses are meant to be spoken: short, contracted, no formatting,
    and shaped by how the guest sounds on this turn.
    """

    VOICE_RULES = """VOICE CONVERSATION RULES:
- Keep responses SHORT (1-3 sentences max). You're speaking, not writing.
- Use natural contractions ("I'll" not "I will", "we're" not "we are").
- Be conversational and human-like.
- If you need more info, ask ONE clarifying question.
- If you can't help, offer to transfer to a human agent.
- Never use markdown, bullet points, or any text formatting.
- Never mention that you're an AI unless directly asked."""

    DEFAULT_TONE = "Maintain a warm, helpful tone."

    @staticmethod
    def tone_adjustment(tone: Tone) -> str:
        if tone.emotion in (ToneEmotion.FRUSTRATED, ToneEmotion.ANGRY):
            return ("The guest sounds frustrated. Be extra empathetic, apologize if appropriate, "
                    "and focus on solutions.")
        if tone.urgency_score > 0.7:
            return "This is urgent. Respond quickly, offer immediate help, and prioritize their need."
        if tone.emotion in (ToneEmotion.HAPPY, ToneEmotion.GRATEFUL):
            return "The guest is in a positive mood. Match their energy with warmth and enthusiasm."
        if tone.emotion == ToneEmotion.CONFUSED:
            return "The guest seems confused. Be patient, clarify options clearly, and guide them step-by-step."
        return VoicePromptBuilder.DEFAULT_TONE

    @classmethod
    def build(cls, profile: BusinessProfile, tone: Tone) -> str:
        amenities = ", ".join(profile.amenities) if profile.amenities else "(none listed)"
        check_in = profile.policies.get("check_in_time", profile.policies.get("check_in", "3:00 PM"))
        check_out = profile.policies.get("check_out_time", profile.policies.get("check_out", "11:00 AM"))

        return f"""You are a voice assistant for {profile.name}, a hotel.

{cls.tone_adjustment(tone)}

Hotel Information:
- Amenities: {amenities}
- Check-in time: {check_in}
- Check-out time: {check_out}

{cls.VOICE_RULES}

Respond naturally as if speaking to a guest on the phone."""

    @classmethod
    def messages(cls, request: DialogueRequest) -> list[dict[str, str]]:
        """Chat messages: system prompt, prior history, then the current utterance."""
        messages = [{"role": "system", "content": cls.build(request.profile, request.tone)}]
        for msg in request.history:
            if msg.role == UtteranceRole.SYSTEM:
                continue
            role = "user" if msg.role == UtteranceRole.USER else "assistant"
            messages.append({"role": role, "content": msg.content})
        messages.append({"role": "user", "content": request.user_message})
        return messages


# ══════════════════════════════════════════════════════════════
#  CLASSIFICATION
# ══════════════════════════════════════════════════════════════

INTENT_DESCRIPTIONS: dict[IntentType, str] = {
    IntentType.BOOK_ROOM: "Guest wants to reserve a room",
    IntentType.MODIFY_RESERVATION: "Change existing booking (dates, room type, guests)",
    IntentType.CANCEL_RESERVATION: "Cancel a booking",
    IntentType.CHECK_AVAILABILITY: "Ask if rooms are available",
    IntentType.ASK_AMENITIES: "Questions about hotel facilities (pool, gym, wifi, parking, shuttle)",
    IntentType.ASK_HOURS: "When is X open? What time is check-in/check-out?",
    IntentType.ASK_LOCATION: "Where is the hotel? How do I get there?",
    IntentType.ASK_PRICING: "How much does X cost? Room rates?",
    IntentType.ASK_RECOMMENDATIONS: "What restaurants/attractions/activities nearby?",
    IntentType.REPORT_ISSUE: "Something is broken, not working, or wrong with the room",
    IntentType.REQUEST_SERVICE: "Need housekeeping, towels, room service, wake-up call, late checkout",
    IntentType.BILLING_INQUIRY: "Questions about charges, payment, invoice, refunds",
    IntentType.TRANSFER_TO_HUMAN: "Explicitly ask for manager, staff, or escalation",
    IntentType.META_FEEDBACK: "Feedback about this assistant (not understanding, sounds robotic)",
    IntentType.GREETING: "Hello, hi, good morning",
    IntentType.ACKNOWLEDGMENT: "Thanks, got it, that helps (mid-conversation)",
    IntentType.FAREWELL: "Goodbye, bye, that's all (ending conversation)",
    IntentType.UNCLEAR: "Cannot determine intent",
}

CLASSIFICATION_RULES = """DISAMBIGUATION RULES:
- "I need X" where X is a service -> request_service
- "X is broken/not working" -> report_issue
- Waiting/delays for service -> report_issue (not request_service)
- Feedback about this assistant -> meta_feedback (not transfer_to_human)
- Thanks without ending the conversation -> acknowledgment (not farewell)
- "Where can I find..." about non-hotel places -> ask_recommendations"""


def build_classification_prompt(transcript: str, history: list[ConversationMessage]) -> str:
    context = "\n".join(f"{m.role.value}: {m.content}" for m in history[-3:]) or "(No prior conversation)"
    intents = "\n".join(f'- "{t.value}" - {desc}' for t, desc in INTENT_DESCRIPTIONS.items())
    emotions = " | ".join(f'"{e.value}"' for e in ToneEmotion)
    sentiments = " | ".join(f'"{s.value}"' for s in ToneSentiment)

    return f"""You are an intent and tone classifier for a hotel voice assistant. Analyze the guest's utterance and respond with strict JSON.

INTENT TYPES (choose exactly one):
{intents}

TONE DIMENSIONS:
- emotion: {emotions}
- sentiment: {sentiments}
- urgency: 0.0 (casual) to 1.0 (emergency)
- politeness: 0.0 (rude) to 1.0 (very polite)
- confidence: 0.0 to 1.0

ENTITIES: put extracted values in "entities" (check_in_date, check_out_date, guests, nights, beds, room_type, amenity_name, issue_type, service_type).

{CLASSIFICATION_RULES}

CONTEXT:
{context}

USER UTTERANCE: "{transcript}"

Respond with ONLY a JSON object with keys: intent, entities, emotion, sentiment, urgency, politeness, confidence."""

