"""
Shared httpx client handling for the live request/response adapters.
"""
from __future__ import annotations

from typing import Optional

import httpx
import structlog

from voice.errors import StageTimeout, StageUnavailable, VoiceError, failure_for_stage

logger = structlog.get_logger()

UNAVAILABLE_STATUSES = {401, 403, 429, 500, 502, 503, 504}


class HTTPAdapterMixin:
    """Lazily created AsyncClient plus error mapping onto the stage taxonomy."""

    stage: str = ""

    def _init_http(
        self,
        base_url: str,
        headers: dict[str, str],
        timeout_s: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url
        self._headers = headers
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=httpx.Timeout(self._timeout_s, connect=min(self._timeout_s, 5.0)),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()

    def _map_error(self, exc: httpx.HTTPError) -> VoiceError:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            logger.warning("provider_http_error", stage=self.stage, status=status, body=exc.response.text[:300])
            if status in UNAVAILABLE_STATUSES:
                return StageUnavailable(f"{self.stage} provider returned HTTP {status}", self.stage)
            return failure_for_stage(self.stage)(f"HTTP {status}")
        if isinstance(exc, httpx.TimeoutException):
            return StageTimeout(self.stage, self._timeout_s)
        if isinstance(exc, httpx.TransportError):
            logger.warning("provider_unreachable", stage=self.stage, error=str(exc))
            return StageUnavailable(f"{self.stage} provider unreachable: {exc}", self.stage)
        return failure_for_stage(self.stage)(str(exc))
