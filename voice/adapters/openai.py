"""
OpenAI chat completions for classification (JSON mode) and generation
(single-shot and SSE token streaming), called directly over httpx.
"""
from __future__ import annotations

import json
import time
from typing import Any, Optional

import httpx
import structlog

from config.settings import ProviderConfig
from models.schemas import (
    ClassificationResult,
    ConversationMessage,
    DialogueRequest,
    DialogueResponse,
    Intent,
    IntentType,
    Tone,
    ToneEmotion,
    ToneSentiment,
)
from voice.adapters.base import ClassificationAdapter, GenerationAdapter, TokenStream, estimate_tokens
from voice.adapters.http import HTTPAdapterMixin
from voice.errors import ClassificationDegraded
from voice.prompts import VoicePromptBuilder, build_classification_prompt

logger = structlog.get_logger()


def _clamp(value: Any, default: float) -> float:
    try:
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        return default


def parse_classification(payload: dict[str, Any], model: str, latency_ms: float) -> ClassificationResult:
    """Build a ClassificationResult from the classifier's JSON; unknown labels fall back to unclear/neutral."""
    try:
        intent_type = IntentType(payload.get("intent", "unclear"))
    except ValueError:
        intent_type = IntentType.UNCLEAR
    try:
        emotion = ToneEmotion(payload.get("emotion", "neutral"))
    except ValueError:
        emotion = ToneEmotion.NEUTRAL
    try:
        sentiment = ToneSentiment(payload.get("sentiment", "neutral"))
    except ValueError:
        sentiment = ToneSentiment.NEUTRAL

    entities = payload.get("entities") or {}
    if not isinstance(entities, dict):
        entities = {}

    return ClassificationResult(
        intent=Intent(
            type=intent_type,
            confidence=_clamp(payload.get("confidence"), 0.9),
            entities=entities,
            model_used=model,
            latency_ms=latency_ms,
        ),
        tone=Tone(
            emotion=emotion,
            sentiment=sentiment,
            urgency_score=_clamp(payload.get("urgency"), 0.3),
            politeness_score=_clamp(payload.get("politeness"), 0.8),
            confidence=_clamp(payload.get("confidence"), 0.85),
            model_used=model,
            latency_ms=latency_ms,
        ),
    )


class OpenAIClassificationAdapter(HTTPAdapterMixin, ClassificationAdapter):
    provider = "openai"
    stage = "classification"

    def __init__(
        self,
        config: ProviderConfig,
        timeout_s: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = config.classification_model
        self._init_http(
            config.openai_base_url,
            {"Authorization": f"Bearer {config.openai_api_key}"},
            timeout_s,
            transport,
        )

    async def classify(self, transcript: str, history: list[ConversationMessage]) -> ClassificationResult:
        started = time.monotonic()
        client = await self._get_client()
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": build_classification_prompt(transcript, history)}],
            "temperature": 0.3,
            "max_tokens": 250,
            "response_format": {"type": "json_object"},
        }
        try:
            response = await client.post("/chat/completions", json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self._map_error(e) from e

        latency_ms = (time.monotonic() - started) * 1000
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
            payload = json.loads(content)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
            raise ClassificationDegraded(f"Unparseable classifier output: {e}") from e

        usage = data.get("usage") or {}
        result = parse_classification(payload, self.model, latency_ms).model_copy(update={
            "input_tokens": usage.get("prompt_tokens") or 0,
            "output_tokens": usage.get("completion_tokens") or 0,
        })
        logger.debug(
            "openai_classified", intent=result.intent.type.value,
            emotion=result.tone.emotion.value, latency_ms=round(latency_ms, 1),
        )
        return result


class OpenAIGenerationAdapter(HTTPAdapterMixin, GenerationAdapter):
    provider = "openai"
    stage = "generation"

    def __init__(
        self,
        config: ProviderConfig,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = config.generation_model
        self.max_tokens = config.generation_max_tokens
        self._init_http(
            config.openai_base_url,
            {"Authorization": f"Bearer {config.openai_api_key}"},
            timeout_s,
            transport,
        )

    def _body(self, request: DialogueRequest, stream: bool) -> dict[str, Any]:
        body = {
            "model": self.model,
            "messages": VoicePromptBuilder.messages(request),
            "temperature": 0.7,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body

    async def generate(self, request: DialogueRequest) -> DialogueResponse:
        started = time.monotonic()
        client = await self._get_client()
        try:
            response = await client.post("/chat/completions", json=self._body(request, stream=False))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self._map_error(e) from e

        data = response.json()
        text = (data["choices"][0]["message"].get("content") or "").strip()
        usage = data.get("usage") or {}
        latency_ms = (time.monotonic() - started) * 1000
        return DialogueResponse(
            text=text,
            latency_ms=latency_ms,
            total_tokens=usage.get("total_tokens") or estimate_tokens(text),
            model=self.model,
            provider=self.provider,
        )

    def stream(self, request: DialogueRequest) -> TokenStream:
        return TokenStream(lambda s: self._tokens(s, request), provider=self.provider, model=self.model)

    async def _tokens(self, stream: TokenStream, request: DialogueRequest):
        client = await self._get_client()
        try:
            async with client.stream("POST", "/chat/completions", json=self._body(request, stream=True)) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    chunk = json.loads(data)
                    if chunk.get("usage"):
                        stream.reported_total_tokens = chunk["usage"].get("total_tokens")
                    for choice in chunk.get("choices", []):
                        token = (choice.get("delta") or {}).get("content")
                        if token:
                            yield token
        except httpx.HTTPError as e:
            raise self._map_error(e) from e
