"""Types for the gateway transformers.

These types represent the internal form of an Anthropic Messages request
and of an OpenAI chat completion, used while translating between the two.
Content blocks and output events are modelled as one frozen dataclass per
variant.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

RoleType = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    """Plain text content."""

    text: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ImageBlock:
    """Image content, either inline base64 data or a remote URL."""

    source_type: str | None = None  # "base64" or "url"
    media_type: str | None = None
    data: str | None = None
    url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    type: Literal["image"] = field(default="image", init=False)

    def to_url(self) -> str | None:
        """Data URI for inline images, the literal URL for remote ones.

        Returns None for an unsupported source type.
        """
        if self.source_type == "base64":
            return f"data:{self.media_type};base64,{self.data}"
        if self.source_type == "url":
            return self.url
        return None


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation made by the assistant."""

    id: str | None
    name: str | None
    input: Any = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    type: Literal["tool_use"] = field(default="tool_use", init=False)


@dataclass(frozen=True)
class ToolResultBlock:
    """Result of a tool invocation, sent back by the user."""

    tool_use_id: str | None
    content: Any = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    type: Literal["tool_result"] = field(default="tool_result", init=False)


@dataclass(frozen=True)
class UnknownBlock:
    """A block type the gateway does not translate (kept for completeness)."""

    type: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False)


ContentBlock = TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock | UnknownBlock


@dataclass(frozen=True)
class ChatMessage:
    """A single conversation message."""

    role: RoleType
    content: str | tuple[ContentBlock, ...]


@dataclass(frozen=True)
class ToolSpec:
    """Definition of an available tool."""

    name: str
    description: str | None
    input_schema: dict[str, Any]  # JSON Schema


@dataclass(frozen=True)
class ChatRequest:
    """A validated Anthropic Messages request."""

    model: str
    max_tokens: int | float
    messages: tuple[ChatMessage, ...]
    system: str | tuple[ContentBlock, ...] | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: tuple[str, ...] = ()
    tools: tuple[ToolSpec, ...] = ()
    tool_choice: str | dict[str, Any] | None = None
    stream: bool = False


@dataclass(frozen=True)
class TokenUsage:
    """Token usage statistics."""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ToolCall:
    """A tool call returned by the upstream, with parsed arguments."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class InternalResponse:
    """Non-streaming upstream response."""

    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None  # Raw upstream value
    usage: TokenUsage = field(default_factory=TokenUsage)
    id: str | None = None


EventType = Literal[
    "message_start",
    "content_block_start",
    "content_block_delta",
    "content_block_stop",
    "message_delta",
    "message_stop",
    "ping",
    "error",
]


@dataclass(frozen=True)
class OutputEvent:
    """One Anthropic SSE event."""

    type: EventType
    data: dict[str, Any]

    def to_sse(self) -> bytes:
        """Format as an SSE record: ``event: <type>\\ndata: <json>\\n\\n``."""
        json_data = json.dumps(self.data, separators=(",", ":"), ensure_ascii=False)
        return f"event: {self.type}\ndata: {json_data}\n\n".encode()

    @property
    def index(self) -> int | None:
        """Content block index for block events, None otherwise."""
        return self.data.get("index")
