"""API format transformers.

This module converts between the Anthropic Messages API and the OpenAI
Chat Completions API, including re-encoding of streaming responses.
"""

from .anthropic import AnthropicTransformer, generate_message_id, map_finish_reason
from .openai import OpenAITransformer
from .streaming import StreamReencoder, StreamState, ToolCallState
from .types import (
    ChatMessage,
    ChatRequest,
    ContentBlock,
    ImageBlock,
    InternalResponse,
    OutputEvent,
    TextBlock,
    TokenUsage,
    ToolCall,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    UnknownBlock,
)
from .validation import MessagesRequest, validate_request

__all__ = [
    # Transformers
    "AnthropicTransformer",
    "OpenAITransformer",
    "StreamReencoder",
    "StreamState",
    "ToolCallState",
    "generate_message_id",
    "map_finish_reason",
    # Types
    "ChatMessage",
    "ChatRequest",
    "ContentBlock",
    "ImageBlock",
    "InternalResponse",
    "OutputEvent",
    "TextBlock",
    "TokenUsage",
    "ToolCall",
    "ToolResultBlock",
    "ToolSpec",
    "ToolUseBlock",
    "UnknownBlock",
    # Validation
    "MessagesRequest",
    "validate_request",
]
