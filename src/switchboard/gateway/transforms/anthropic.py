"""Anthropic Messages API transformer.

Converts between Anthropic Messages API format and the internal
representation. Handles request parsing, response building and the
construction of streaming SSE events.

Anthropic API Reference:
- Request: POST /v1/messages with {messages, max_tokens, model, stream, tools, system}
- Response: {id, type, role, content, model, stop_reason, usage}
- Streaming: SSE events (message_start, content_block_start/delta/stop, message_delta, message_stop)
"""

import random
import string
import time
from dataclasses import dataclass
from typing import Any, cast

from .types import (
    ChatMessage,
    ChatRequest,
    ContentBlock,
    ImageBlock,
    InternalResponse,
    OutputEvent,
    RoleType,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    UnknownBlock,
)

_BASE36 = string.digits + string.ascii_lowercase

# Upstream finish_reason -> Anthropic stop_reason. Anything else is end_turn.
STOP_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
}


def map_finish_reason(finish_reason: Any) -> str:
    """Map an upstream finish_reason to an Anthropic stop_reason."""
    if isinstance(finish_reason, str):
        return STOP_REASON_MAP.get(finish_reason, "end_turn")
    return "end_turn"


def generate_message_id() -> str:
    """Generate a unique message ID: ``msg_{epoch_ms}_{9 base36 chars}``."""
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"msg_{int(time.time() * 1000)}_{suffix}"


def parse_content_block(block: Any) -> ContentBlock:
    """Parse one content block dict into its typed variant.

    Fields the gateway does not read are kept in ``extra``.
    """
    if not isinstance(block, dict):
        return UnknownBlock(type=type(block).__name__)

    block_type = block.get("type")

    if block_type == "text":
        extra = _extra(block, "type", "text")
        return TextBlock(text=block.get("text") or "", extra=extra)

    if block_type == "image":
        source = block.get("source")
        if not isinstance(source, dict):
            source = {}
        extra = _extra(block, "type", "source")
        return ImageBlock(
            source_type=source.get("type"),
            media_type=source.get("media_type"),
            data=source.get("data"),
            url=source.get("url"),
            extra=extra,
        )

    if block_type == "tool_use":
        return ToolUseBlock(
            id=block.get("id"),
            name=block.get("name"),
            input=block.get("input"),
            extra=_extra(block, "type", "id", "name", "input"),
        )

    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=block.get("tool_use_id"),
            content=block.get("content"),
            extra=_extra(block, "type", "tool_use_id", "content"),
        )

    return UnknownBlock(type=str(block_type), extra=_extra(block, "type"))


def _extra(block: dict[str, Any], *known: str) -> dict[str, Any]:
    return {k: v for k, v in block.items() if k not in known}


@dataclass
class AnthropicTransformer:
    """Transforms Anthropic API format to/from internal format."""

    def to_internal(self, body: dict[str, Any]) -> ChatRequest:
        """Convert a validated Anthropic Messages API request to internal format.

        Args:
            body: Anthropic request body with messages, max_tokens, etc.

        Returns:
            ChatRequest with typed messages, tools and parameters
        """
        messages: list[ChatMessage] = []
        for msg in body["messages"]:
            if not isinstance(msg, dict):
                continue
            role = cast(RoleType, msg.get("role", "user"))
            content = msg.get("content")
            if isinstance(content, list):
                messages.append(
                    ChatMessage(
                        role=role,
                        content=tuple(parse_content_block(b) for b in content),
                    )
                )
            else:
                # Anything other than a block list or a string becomes empty text
                text = content if isinstance(content, str) else ""
                messages.append(ChatMessage(role=role, content=text))

        tools = tuple(
            ToolSpec(
                name=tool.get("name", ""),
                description=tool.get("description"),
                input_schema=tool.get("input_schema") or {},
            )
            for tool in body.get("tools") or []
        )

        # System can be a string or an array of blocks
        system = body.get("system")
        if isinstance(system, list):
            system = tuple(parse_content_block(b) for b in system)
        elif not isinstance(system, str):
            system = None

        return ChatRequest(
            model=body["model"],
            max_tokens=body["max_tokens"],
            messages=tuple(messages),
            system=system,
            temperature=body.get("temperature"),
            top_p=body.get("top_p"),
            top_k=body.get("top_k"),
            stop_sequences=tuple(body.get("stop_sequences") or ()),
            tools=tools,
            tool_choice=body.get("tool_choice"),
            stream=bool(body.get("stream", False)),
        )

    def from_internal(self, response: InternalResponse, model: str) -> dict[str, Any]:
        """Convert internal response to Anthropic Messages API format.

        Args:
            response: Internal response format
            model: Model name the caller asked for

        Returns:
            Anthropic-format response dict
        """
        content: list[dict[str, Any]] = []

        if response.content:
            content.append({"type": "text", "text": response.content})

        for tool_call in response.tool_calls:
            content.append(
                {
                    "type": "tool_use",
                    "id": tool_call.id,
                    "name": tool_call.name,
                    "input": tool_call.arguments,
                }
            )

        return {
            "id": response.id or generate_message_id(),
            "type": "message",
            "role": "assistant",
            "model": model,
            "content": content,
            "stop_reason": map_finish_reason(response.finish_reason),
            "stop_sequence": None,
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        }


# ---------------------------------------------------------------------------
# Streaming event builders
# ---------------------------------------------------------------------------


def message_start(message_id: str, model: str) -> OutputEvent:
    return OutputEvent(
        "message_start",
        {
            "type": "message_start",
            "message": {
                "id": message_id,
                "type": "message",
                "role": "assistant",
                "model": model,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {
                    "input_tokens": 0,
                    "cache_creation_input_tokens": 0,
                    "cache_read_input_tokens": 0,
                    "output_tokens": 0,
                },
            },
        },
    )


def text_block_start(index: int) -> OutputEvent:
    return OutputEvent(
        "content_block_start",
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "text", "text": ""},
        },
    )


def tool_block_start(index: int, tool_id: str, name: str) -> OutputEvent:
    return OutputEvent(
        "content_block_start",
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
        },
    )


def text_delta(index: int, text: str) -> OutputEvent:
    return OutputEvent(
        "content_block_delta",
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "text_delta", "text": text},
        },
    )


def input_json_delta(index: int, partial_json: str) -> OutputEvent:
    return OutputEvent(
        "content_block_delta",
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": partial_json},
        },
    )


def block_stop(index: int) -> OutputEvent:
    return OutputEvent("content_block_stop", {"type": "content_block_stop", "index": index})


def message_delta(stop_reason: str, output_tokens: int) -> OutputEvent:
    return OutputEvent(
        "message_delta",
        {
            "type": "message_delta",
            "delta": {"stop_reason": stop_reason, "stop_sequence": None},
            "usage": {"output_tokens": output_tokens},
        },
    )


def message_stop() -> OutputEvent:
    return OutputEvent("message_stop", {"type": "message_stop"})


def ping() -> OutputEvent:
    return OutputEvent("ping", {"type": "ping"})


def error_event(error_type: str, message: str) -> OutputEvent:
    """Terminal error record for a stream that cannot complete."""
    return OutputEvent(
        "error",
        {"type": "error", "error": {"type": error_type, "message": message}},
    )
