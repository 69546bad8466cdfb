"""Anthropic-to-OpenAI gateway server.

Exposes the Anthropic Messages API and proxies requests to an
OpenAI-compatible upstream:
1. Accepts Anthropic format requests on /v1/messages
2. Validates and transforms them to OpenAI format
3. Forwards to the upstream chat completions endpoint
4. Transforms responses (or re-encodes the stream) back to Anthropic format

Also serves /v1/messages/count_tokens, /health and a metadata root.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import aiohttp
from aiohttp import web

from switchboard import __version__
from switchboard.config import GatewayConfig
from switchboard.gateway.clients.llm_client import LLMClient, LLMClientConfig
from switchboard.gateway.errors import (
    GatewayError,
    InternalError,
    InvalidRequestError,
    RequestValidationError,
)
from switchboard.gateway.tokens import estimate_input_tokens
from switchboard.gateway.tracing import RequestTracer
from switchboard.gateway.transforms.anthropic import AnthropicTransformer, error_event
from switchboard.gateway.transforms.openai import OpenAITransformer
from switchboard.gateway.transforms.streaming import StreamReencoder
from switchboard.gateway.transforms.validation import validate_request

logger = logging.getLogger(__name__)

SERVICE_NAME = "switchboard"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def error_middleware(expose_errors: bool) -> Any:
    """Outermost boundary: turn anything uncaught into an InternalError response."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except GatewayError as e:
            return web.json_response(e.to_body(), status=e.status)
        except Exception as e:
            logger.exception("Request failed: %s %s", request.method, request.path)
            error = InternalError.wrap(e, expose=expose_errors)
            return web.json_response(error.to_body(), status=error.status)

    return middleware


@dataclass
class GatewayServer:
    """Accepts Anthropic Messages API requests and proxies them to an
    OpenAI-compatible upstream.

    Example:
        >>> config = GatewayConfig(
        ...     upstream_base_url="http://localhost:4000",
        ...     upstream_api_key="sk-...",
        ...     upstream_model="gpt-4o",
        ... )
        >>> server = GatewayServer(config=config)
        >>> await server.serve()
    """

    config: GatewayConfig
    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _client: LLMClient | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _tracer: RequestTracer = field(init=False)
    _started_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self._tracer = RequestTracer(debug_dir=self.config.debug_dir)

    def create_app(self) -> web.Application:
        """Build the aiohttp application with all routes."""
        app = web.Application(
            client_max_size=self.config.max_body_size,
            middlewares=[error_middleware(expose_errors=not self.config.is_production)],
        )
        app.router.add_post("/v1/messages", self._handle_messages)
        app.router.add_post("/v1/messages/count_tokens", self._handle_count_tokens)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/", self._handle_root)
        app.router.add_post("/api/shutdown", self._handle_shutdown)
        return app

    async def start(self) -> int:
        """Connect the upstream client and start listening.

        Returns:
            The bound port (useful when config.port is 0)
        """
        self._client = LLMClient(
            config=LLMClientConfig(
                base_url=self.config.upstream_base_url,
                api_key=self.config.upstream_api_key,
                model=self.config.upstream_model,
                request_timeout=self.config.request_timeout,
                health_timeout=self.config.health_timeout,
            )
        )
        await self._client.connect()

        self._app = self.create_app()
        # Cancel handlers on client disconnect so idle upstream reads stop too
        self._runner = web.AppRunner(self._app, handler_cancellation=True)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()

        port = self.config.port
        server = getattr(site, "_server", None)
        if server is not None and server.sockets:
            port = server.sockets[0].getsockname()[1]

        self._started_at = time.monotonic()
        logger.info(
            "Gateway listening on %s:%s -> %s (%s, %s mode)",
            self.config.host,
            port,
            self.config.upstream_base_url,
            self.config.upstream_model,
            self.config.environment,
        )
        if self.config.debug_dir:
            logger.info("Debug files will be saved to: %s", self.config.debug_dir)
        return port

    async def serve(self) -> None:
        """Start the server and block until shutdown is requested."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown_event.set)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                pass

        try:
            await self._shutdown_event.wait()
            logger.info("Shutdown requested, closing server...")
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the server and release the upstream client."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self._client:
            await self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # /v1/messages
    # ------------------------------------------------------------------

    async def _handle_messages(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/messages - main proxy endpoint."""
        start_time = time.time()

        content_type = request.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            return self._error_response(
                RequestValidationError(
                    "Content-Type", f"must be application/json, got: {content_type}"
                )
            )

        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            return self._error_response(RequestValidationError("body", f"Invalid JSON: {e}"))

        trace_id = self._tracer.generate_trace_id(body)

        errors = validate_request(body)
        if errors:
            logger.info("[%s] Rejected invalid request: %s", trace_id, errors[0])
            error = InvalidRequestError("; ".join(str(e) for e in errors))
            return self._error_response(error, trace_id)

        self._tracer.save_debug(trace_id, "1_source_request.json", body)

        chat_request = AnthropicTransformer().to_internal(body)
        openai_request = OpenAITransformer().to_upstream(chat_request, self.config.upstream_model)

        logger.info(
            "[%s] Request: model=%s, messages=%d, max_tokens=%s, stream=%s -> %s (%s)",
            trace_id,
            chat_request.model,
            len(chat_request.messages),
            chat_request.max_tokens,
            chat_request.stream,
            self.config.upstream_base_url,
            self.config.upstream_model,
        )
        self._tracer.save_debug(trace_id, "2_target_request.json", openai_request)

        if chat_request.stream:
            return await self._handle_streaming(
                request, openai_request, chat_request.model, trace_id, start_time
            )
        return await self._handle_non_streaming(
            openai_request, chat_request.model, trace_id, start_time
        )

    async def _handle_non_streaming(
        self,
        openai_request: dict[str, Any],
        model: str,
        trace_id: str,
        start_time: float,
    ) -> web.Response:
        """Handle non-streaming response."""
        client = self._require_client()

        try:
            internal_response = await client.send(openai_request, trace_id)
        except GatewayError as e:
            logger.error("[%s] Upstream request failed: %s", trace_id, e)
            return self._error_response(e, trace_id)

        anthropic_response = AnthropicTransformer().from_internal(internal_response, model)
        self._tracer.save_debug(trace_id, "3_source_response.json", anthropic_response)

        usage = anthropic_response["usage"]
        logger.info(
            "[%s] Response complete: stop_reason=%s, input_tokens=%s, output_tokens=%s (%.2fs)",
            trace_id,
            anthropic_response["stop_reason"],
            usage["input_tokens"],
            usage["output_tokens"],
            time.time() - start_time,
        )

        return web.json_response(anthropic_response, headers={"X-Request-ID": trace_id})

    async def _handle_streaming(
        self,
        request: web.Request,
        openai_request: dict[str, Any],
        model: str,
        trace_id: str,
        start_time: float,
    ) -> web.StreamResponse:
        """Handle streaming response.

        Upstream failures before the first byte are returned as a normal
        error response; after that the stream is ended with an error event.
        """
        client = self._require_client()
        raw_lines: list[bytes] | None = [] if self._tracer.debug_dir else None

        try:
            async with client.stream(openai_request, trace_id) as chunks:
                response = web.StreamResponse(
                    status=200,
                    headers={
                        "Content-Type": "text/event-stream",
                        "Cache-Control": "no-cache",
                        "Connection": "keep-alive",
                        "X-Request-ID": trace_id,
                    },
                )
                await response.prepare(request)

                if raw_lines is not None:
                    chunks = _tee(chunks, raw_lines)
                reencoder = StreamReencoder(model=model, trace_id=trace_id)
                completed = await self._pump(response, reencoder, chunks, trace_id)
        except GatewayError as e:
            logger.error("[%s] Upstream streaming request failed: %s", trace_id, e)
            return self._error_response(e, trace_id)

        if raw_lines is not None:
            self._tracer.save_debug(
                trace_id, "3_target_stream.txt", b"".join(raw_lines).decode("utf-8", "replace")
            )

        if completed:
            logger.info(
                "[%s] Streaming request completed (%.2fs)", trace_id, time.time() - start_time
            )
            try:
                await response.write_eof()
            except ConnectionResetError:
                pass  # Client already disconnected

        return response

    async def _pump(
        self,
        response: web.StreamResponse,
        reencoder: StreamReencoder,
        chunks: AsyncIterator[bytes],
        trace_id: str,
    ) -> bool:
        """Write re-encoded events until the stream ends.

        Returns:
            False if the client went away, True otherwise
        """
        try:
            async for event in reencoder.reencode(chunks):
                await response.write(event.to_sse())
        except ConnectionResetError:
            logger.info("[%s] Client disconnected during streaming", trace_id)
            return False
        except asyncio.CancelledError:
            logger.info("[%s] Client disconnected while waiting for upstream", trace_id)
            raise
        except GatewayError as e:
            logger.error("[%s] Stream aborted: %s", trace_id, e)
            await self._write_error_event(response, e, trace_id)
        except (aiohttp.ClientError, OSError) as e:
            logger.error("[%s] Stream aborted by upstream: %s", trace_id, e)
            error = InternalError.wrap(e, expose=not self.config.is_production)
            await self._write_error_event(response, error, trace_id)
        except Exception as e:
            logger.exception("[%s] Unexpected error during streaming", trace_id)
            error = InternalError.wrap(e, expose=not self.config.is_production)
            await self._write_error_event(response, error, trace_id)
        return True

    async def _write_error_event(
        self,
        response: web.StreamResponse,
        error: GatewayError,
        trace_id: str,
    ) -> None:
        event = error_event(error.error_type, str(error))
        try:
            await response.write(event.to_sse())
        except ConnectionResetError:
            logger.debug("[%s] Client gone before error event could be sent", trace_id)

    # ------------------------------------------------------------------
    # Other endpoints
    # ------------------------------------------------------------------

    async def _handle_count_tokens(self, request: web.Request) -> web.Response:
        """Handle POST /v1/messages/count_tokens."""
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            return self._error_response(RequestValidationError("body", f"Invalid JSON: {e}"))

        messages = body.get("messages") if isinstance(body, dict) else None
        if not isinstance(messages, list):
            return self._error_response(RequestValidationError("messages", "must be an array"))

        input_tokens = estimate_input_tokens(messages, body.get("system"))
        logger.debug(
            "Token count estimated: messages=%d, input_tokens=%d",
            len(messages),
            input_tokens,
        )
        return web.json_response({"input_tokens": input_tokens})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health - reports upstream reachability."""
        client = self._require_client()
        health: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "uptime": round(time.monotonic() - self._started_at, 3),
        }

        try:
            healthy = await client.check_health()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Health check failed: %s", e)
            health["status"] = "unhealthy"
            health["upstream"] = {"status": "error", "url": self.config.upstream_base_url}
            return web.json_response(health, status=503)

        health["status"] = "healthy" if healthy else "degraded"
        health["upstream"] = {
            "status": "connected" if healthy else "disconnected",
            "url": self.config.upstream_base_url,
        }
        return web.json_response(health, status=200 if healthy else 503)

    async def _handle_root(self, request: web.Request) -> web.Response:
        """Handle GET / - service information."""
        return web.json_response(
            {
                "service": SERVICE_NAME,
                "version": __version__,
                "model": self.config.upstream_model,
                "endpoints": {
                    "health": "/health",
                    "messages": "/v1/messages",
                    "count_tokens": "/v1/messages/count_tokens",
                },
            }
        )

    async def _handle_shutdown(self, request: web.Request) -> web.Response:
        """Handle POST /api/shutdown."""
        self._shutdown_event.set()
        return web.json_response({"success": True, "message": "Shutdown initiated"})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_client(self) -> LLMClient:
        if self._client is None:
            raise RuntimeError("Upstream client not initialized")
        return self._client

    def _error_response(self, error: GatewayError, trace_id: str | None = None) -> web.Response:
        """Return Anthropic-format error response."""
        headers = {"X-Request-ID": trace_id} if trace_id else None
        return web.json_response(error.to_body(), status=error.status, headers=headers)


async def _tee(chunks: AsyncIterator[bytes], sink: list[bytes]) -> AsyncIterator[bytes]:
    """Pass chunks through while keeping a copy for debug output."""
    async for data in chunks:
        sink.append(data)
        yield data
