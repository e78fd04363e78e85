"""
Cooperative cancellation and bounded waits for stage calls.

Every adapter call made by the turn coordinator goes through run_stage()
or consume_stage(): the token is checked before the call starts, raced
against the call while it is in flight, and checked again after every
suspension point. Timeouts become StageTimeout; unexpected adapter
exceptions become the stage's failure type.
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import structlog

from voice.errors import StageTimeout, TurnCancelled, VoiceError

logger = structlog.get_logger()

FailureFactory = Callable[[str], VoiceError]


class CancellationToken:
    """Per-turn cancellation flag that can also be awaited."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._event.is_set():
            raise TurnCancelled(stage)

    async def wait(self) -> None:
        await self._event.wait()


async def run_stage(
    stage: str,
    awaitable: Awaitable[Any],
    *,
    token: CancellationToken,
    timeout_s: Optional[float],
    failure: FailureFactory,
) -> Any:
    """Await one stage call under the token and a bounded wait."""
    if token.cancelled:
        # Never started; close the coroutine so it is not left pending
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise TurnCancelled(stage)

    call = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {call, waiter}, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        waiter.cancel()
        if not call.done():
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)

    if call not in done or call.cancelled():
        if token.cancelled:
            raise TurnCancelled(stage)
        raise StageTimeout(stage, timeout_s or 0.0)

    try:
        result = call.result()
    except (VoiceError, TurnCancelled):
        raise
    except Exception as e:
        logger.debug("stage_call_failed", stage=stage, error=str(e), error_type=type(e).__name__)
        raise failure(f"{type(e).__name__}: {e}") from e

    token.raise_if_cancelled(stage)
    return result


async def consume_stage(
    stage: str,
    stream: AsyncIterator[Any],
    handle: Callable[[Any], None],
    *,
    token: CancellationToken,
    timeout_s: Optional[float],
    failure: FailureFactory,
) -> None:
    """
    Drain a streaming stage, passing each item to handle(). The timeout
    bounds the whole stream, not each item. The token is checked before
    every item is handed on, so nothing is delivered after cancellation.
    """
    async def _drain() -> None:
        async for item in stream:
            token.raise_if_cancelled(stage)
            handle(item)

    try:
        await run_stage(stage, _drain(), token=token, timeout_s=timeout_s, failure=failure)
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
