"""
Voice Session Manager — owns every live conversation in the process.

1. Builds a fresh adapter set per session from settings
2. Starts the ConversationStateMachine and tracks it by id
3. Shares one MetricsCollector across all sessions
4. Tears sessions down cleanly on disconnect or shutdown
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog

from config.settings import VoiceSettings
from models.schemas import BusinessProfile, ConversationChannel
from voice.adapters import AdapterSet, create_adapters
from voice.conversation import ConversationStateMachine
from voice.metrics import MetricsCollector

logger = structlog.get_logger()

AdapterFactory = Callable[[VoiceSettings], AdapterSet]


class VoiceSessionManager:
    """
    Manages lifecycle of conversation sessions.

    Usage:
        manager = VoiceSessionManager(settings)
        session = await manager.open_session()
        ...
        await manager.close_session(session.id)
        await manager.shutdown()
    """

    def __init__(
        self,
        settings: VoiceSettings,
        collector: Optional[MetricsCollector] = None,
        adapter_factory: AdapterFactory = create_adapters,
        profile: Optional[BusinessProfile] = None,
    ):
        self.settings = settings
        self.collector = collector or MetricsCollector(settings.costs)
        self.profile = profile or BusinessProfile()
        self._adapter_factory = adapter_factory
        self._sessions: dict[str, ConversationStateMachine] = {}

    @property
    def active_session_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.ended)

    def get_session(self, conversation_id: str) -> Optional[ConversationStateMachine]:
        return self._sessions.get(conversation_id)

    # ── Session Lifecycle ─────────────────────────────────

    async def open_session(
        self,
        channel: ConversationChannel = ConversationChannel.WEB,
        profile: Optional[BusinessProfile] = None,
        conversation_id: Optional[str] = None,
    ) -> ConversationStateMachine:
        """
        Create and start a session. A transcription connect failure is
        raised to the caller after the half-open session is torn down.
        """
        if conversation_id and conversation_id in self._sessions:
            raise ValueError(f"Session {conversation_id} already exists")

        session = ConversationStateMachine(
            adapters=self._adapter_factory(self.settings),
            collector=self.collector,
            settings=self.settings,
            profile=profile or self.profile,
            channel=channel,
            conversation_id=conversation_id,
        )
        self._sessions[session.id] = session
        try:
            await session.start()
        except Exception as e:
            logger.error("session_start_failed", conversation_id=session.id, error=str(e))
            await self.close_session(session.id, reason="start_failed")
            raise

        logger.info(
            "session_opened",
            conversation_id=session.id,
            channel=channel.value,
            active_sessions=self.active_session_count,
        )
        return session

    async def close_session(self, conversation_id: str, reason: str = "client_closed") -> Optional[dict[str, Any]]:
        """End a session and return its final snapshot."""
        session = self._sessions.pop(conversation_id, None)
        if session is None:
            return None
        await session.end_session(reason=reason)
        logger.info(
            "session_closed",
            conversation_id=conversation_id,
            reason=reason,
            active_sessions=self.active_session_count,
        )
        return session.snapshot()

    # ── Status ─────────────────────────────────────────────

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.snapshot() for s in self._sessions.values()]

    def get_status(self) -> dict[str, Any]:
        return {
            "mode": self.settings.mode,
            "active_sessions": self.active_session_count,
            "in_flight_turns": self.collector.in_flight_count,
            "stages": self.collector.get_stage_stats(),
        }

    async def shutdown(self) -> None:
        ids = list(self._sessions)
        logger.info("shutting_down_sessions", count=len(ids))
        await asyncio.gather(
            *(self.close_session(cid, reason="shutdown") for cid in ids),
            return_exceptions=True,
        )
        logger.info("voice_session_manager_stopped")
