"""LLM client for upstream API calls.

Uses aiohttp.ClientSession for the upstream OpenAI-compatible API.

Features:
- Both streaming and non-streaming requests
- A single attempt per call; failures are reported, never retried
- Bounded wait, surfaced as UpstreamTimeoutError
- Upstream health probe
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import aiohttp

from ..errors import InvalidUpstreamResponse, UpstreamError, UpstreamTimeoutError
from ..transforms.openai import OpenAITransformer
from ..transforms.types import InternalResponse

logger = logging.getLogger(__name__)


@dataclass
class LLMClientConfig:
    """Configuration for LLM client."""

    base_url: str
    api_key: str
    model: str

    # Timeouts (seconds)
    request_timeout: float = 120.0
    health_timeout: float = 5.0

    @property
    def completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1/chat/completions"

    @property
    def health_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/health"


@dataclass
class LLMClient:
    """HTTP client for the upstream LLM API.

    Provides both streaming and non-streaming methods.
    """

    config: LLMClientConfig
    _session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        """Initialize HTTP client."""
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        self._session = aiohttp.ClientSession(
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._session:
            await self._session.close()
            self._session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._session

    async def send(
        self,
        request_body: dict[str, Any],
        trace_id: str | None = None,
    ) -> InternalResponse:
        """Non-streaming request.

        Args:
            request_body: OpenAI-format request body
            trace_id: Optional trace ID for correlation

        Returns:
            InternalResponse with the parsed first choice

        Raises:
            UpstreamError: If upstream returns a non-success status
            UpstreamTimeoutError: If the call exceeds request_timeout
            InvalidUpstreamResponse: If the payload is not a chat completion
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"
        session = self._require_session()
        request_body = {**request_body, "stream": False}

        start_time = time.time()
        try:
            async with session.post(
                self.config.completions_url,
                json=request_body,
                headers={"X-Request-ID": trace_id},
            ) as response:
                if response.status != 200:
                    raise await self._upstream_error(response, trace_id)
                try:
                    data = await response.json(content_type=None)
                except json.JSONDecodeError as e:
                    raise InvalidUpstreamResponse(f"Upstream returned invalid JSON: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(
                "[%s] Upstream request timed out after %.0fs",
                trace_id,
                self.config.request_timeout,
            )
            raise UpstreamTimeoutError("Request to upstream timed out") from e
        except aiohttp.ClientError as e:
            logger.error("[%s] Upstream connection failed: %s", trace_id, e)
            raise UpstreamError(f"Upstream connection failed: {e}", 502) from e

        logger.debug("[%s] Upstream responded in %.2fs", trace_id, time.time() - start_time)
        return OpenAITransformer().from_upstream(data)

    @asynccontextmanager
    async def stream(
        self,
        request_body: dict[str, Any],
        trace_id: str | None = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Streaming request.

        The upstream status is checked before the context is entered, so
        errors can still be reported as a plain HTTP response. The yielded
        iterator produces raw body bytes as they arrive. Leaving the context
        early closes the upstream connection instead of draining it.

        Raises:
            UpstreamError: If upstream returns a non-success status
            UpstreamTimeoutError: If the call (including reading the body)
                exceeds request_timeout
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"
        session = self._require_session()
        request_body = {**request_body, "stream": True}

        try:
            response = await session.post(
                self.config.completions_url,
                json=request_body,
                headers={"X-Request-ID": trace_id},
            )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError("Request to upstream timed out") from e
        except aiohttp.ClientError as e:
            logger.error("[%s] Upstream connection failed: %s", trace_id, e)
            raise UpstreamError(f"Upstream connection failed: {e}", 502) from e

        try:
            if response.status != 200:
                raise await self._upstream_error(response, trace_id)
            logger.debug("[%s] Starting to receive SSE stream", trace_id)
            yield self._iter_body(response, trace_id)
        finally:
            if response.content.at_eof():
                response.release()
            else:
                # Caller stopped early or failed; drop the connection
                response.close()

    async def _iter_body(
        self,
        response: aiohttp.ClientResponse,
        trace_id: str,
    ) -> AsyncIterator[bytes]:
        received = 0
        try:
            async for data in response.content.iter_any():
                received += len(data)
                yield data
        except asyncio.TimeoutError as e:
            logger.error("[%s] Upstream stream timed out after %d bytes", trace_id, received)
            raise UpstreamTimeoutError("Upstream stream timed out") from e
        logger.debug("[%s] Upstream stream closed after %d bytes", trace_id, received)

    async def _upstream_error(
        self,
        response: aiohttp.ClientResponse,
        trace_id: str,
    ) -> UpstreamError:
        error_body = await response.text()
        logger.error(
            "[%s] Upstream error %d: %s",
            trace_id,
            response.status,
            error_body[:500],
        )
        return UpstreamError(
            f"Upstream request failed: {response.status} {response.reason or ''}".rstrip(),
            response.status,
            error_body,
        )

    async def check_health(self) -> bool:
        """Probe the upstream health endpoint.

        Returns:
            True if the upstream answered with a success status

        Raises:
            aiohttp.ClientError, asyncio.TimeoutError: If the upstream is unreachable
        """
        session = self._require_session()
        async with session.get(
            self.config.health_url,
            timeout=aiohttp.ClientTimeout(total=self.config.health_timeout),
        ) as response:
            return response.ok
