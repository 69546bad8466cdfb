"""switchboard gateway - protocol translation between Anthropic and OpenAI.

Components:
- Server: aiohttp application exposing the Anthropic Messages API
- Transforms: request/response translation and stream re-encoding
- Clients: HTTP client for the upstream API

Usage:
    from switchboard.config import load_config
    from switchboard.gateway.server import GatewayServer
    import asyncio

    asyncio.run(GatewayServer(config=load_config()).serve())
"""

from switchboard.gateway.errors import (
    ERROR_TYPE_MAP,
    GatewayError,
    InternalError,
    InvalidRequestError,
    InvalidUpstreamResponse,
    RequestValidationError,
    UpstreamError,
    UpstreamTimeoutError,
)
from switchboard.gateway.tracing import RequestTracer

__all__ = [
    "ERROR_TYPE_MAP",
    "GatewayError",
    "InternalError",
    "InvalidRequestError",
    "InvalidUpstreamResponse",
    "RequestTracer",
    "RequestValidationError",
    "UpstreamError",
    "UpstreamTimeoutError",
]
