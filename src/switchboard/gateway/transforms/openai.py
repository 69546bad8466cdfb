"""OpenAI Chat Completions API transformer.

Converts internal requests to OpenAI format for the upstream call, and
parses non-streaming OpenAI responses into InternalResponse.

OpenAI API Reference:
- Request: POST /v1/chat/completions with {model, messages, tools, stream, max_tokens, temperature}
- Messages: [{role, content}]
- Response: {id, choices: [{message: {content, tool_calls}, finish_reason}], usage}
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from ..errors import InvalidUpstreamResponse
from .types import (
    ChatMessage,
    ChatRequest,
    ContentBlock,
    ImageBlock,
    InternalResponse,
    TextBlock,
    TokenUsage,
    ToolCall,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

# Content used when a flattened message would otherwise be empty
EMPTY_CONTENT_PLACEHOLDER = "..."

# Anthropic object-form tool_choice types that map to an OpenAI string directive
_TOOL_CHOICE_TYPES = {
    "auto": "auto",
    "any": "required",
    "none": "none",
}


def dumps(value: Any) -> str:
    """Compact JSON, matching what a JavaScript client would send."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


@dataclass
class OpenAITransformer:
    """Transforms internal format to/from OpenAI API format."""

    def to_upstream(self, request: ChatRequest, model: str) -> dict[str, Any]:
        """Convert internal request to OpenAI Chat Completions format.

        Args:
            request: Validated internal request
            model: Upstream model name (replaces request.model)

        Returns:
            OpenAI-format request dict ready for /v1/chat/completions
        """
        messages: list[dict[str, Any]] = []

        system = self._system_text(request.system)
        if system:
            messages.append({"role": "system", "content": system})

        for msg in request.messages:
            messages.append(self._convert_message(msg))

        result: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "stream": request.stream,
        }

        # Sampling parameters are only forwarded when the caller set them
        if request.temperature is not None:
            result["temperature"] = request.temperature
        if request.top_p is not None:
            result["top_p"] = request.top_p
        if request.stop_sequences:
            result["stop"] = list(request.stop_sequences)

        if request.tools:
            result["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in request.tools
            ]
            tool_choice = self._convert_tool_choice(request.tool_choice)
            if tool_choice is not None:
                result["tool_choice"] = tool_choice

        return result

    def _system_text(self, system: str | tuple[ContentBlock, ...] | None) -> str:
        if system is None:
            return ""
        if isinstance(system, str):
            return system
        return "\n".join(
            block.text for block in system if isinstance(block, TextBlock) and block.text
        )

    def _convert_message(self, msg: ChatMessage) -> dict[str, Any]:
        if isinstance(msg.content, str):
            return {"role": msg.role, "content": msg.content}

        if any(isinstance(block, ImageBlock) for block in msg.content):
            return {"role": msg.role, "content": self._content_array(msg.content)}

        return {"role": msg.role, "content": self._flatten(msg.content)}

    def _content_array(self, blocks: tuple[ContentBlock, ...]) -> list[dict[str, Any]]:
        """Structured content for messages carrying images. Tool blocks are dropped."""
        content: list[dict[str, Any]] = []
        for block in blocks:
            if isinstance(block, TextBlock) and block.text:
                content.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                url = block.to_url()
                if url:
                    content.append({"type": "image_url", "image_url": {"url": url}})
        return content

    def _flatten(self, blocks: tuple[ContentBlock, ...]) -> str:
        """Flatten text and tool blocks into one string."""
        parts: list[str] = []
        for block in blocks:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolResultBlock):
                content = block.content if isinstance(block.content, str) else dumps(block.content)
                parts.append(f"[Tool Result: {block.tool_use_id or 'unknown'}]\n{content}")
            elif isinstance(block, ToolUseBlock):
                tool_input = dumps(block.input if block.input is not None else {})
                parts.append(f"[Tool Use: {block.name or 'unknown'}]\n{tool_input}")

        text = "\n".join(part for part in parts if part)
        return text or EMPTY_CONTENT_PLACEHOLDER

    def _convert_tool_choice(self, tool_choice: Any) -> str | dict[str, Any] | None:
        if isinstance(tool_choice, str):
            return tool_choice
        if isinstance(tool_choice, dict):
            choice_type = tool_choice.get("type")
            if choice_type == "tool":
                return {"type": "function", "function": {"name": tool_choice.get("name")}}
            if choice_type in _TOOL_CHOICE_TYPES:
                return _TOOL_CHOICE_TYPES[choice_type]
        return None

    def from_upstream(self, response: Any) -> InternalResponse:
        """Convert OpenAI non-streaming response to internal format.

        Only the first choice is used.

        Raises:
            InvalidUpstreamResponse: If the response carries no choices
        """
        choices = response.get("choices") if isinstance(response, dict) else None
        if not choices or not isinstance(choices, list):
            logger.warning("Upstream response missing choices array")
            raise InvalidUpstreamResponse("Invalid upstream response: missing choices")

        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise InvalidUpstreamResponse("Invalid upstream response: missing message")

        tool_calls: list[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            if not isinstance(tc, dict):
                continue
            function = tc.get("function")
            if not isinstance(function, dict):
                function = {}
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError as e:
                logger.warning(
                    "Failed to parse tool call arguments for %s (%s): %s",
                    function.get("name"),
                    tc.get("id"),
                    e,
                )
                continue
            if not isinstance(arguments, dict):
                logger.warning(
                    "Tool call arguments for %s (%s) are not a JSON object",
                    function.get("name"),
                    tc.get("id"),
                )
                continue

            tool_calls.append(
                ToolCall(
                    id=tc.get("id") or "",
                    name=function.get("name") or "",
                    arguments=arguments,
                )
            )

        usage = response.get("usage") or {}

        return InternalResponse(
            content=message.get("content") or "",
            tool_calls=tuple(tool_calls),
            finish_reason=choice.get("finish_reason"),
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens") or 0,
                output_tokens=usage.get("completion_tokens") or 0,
            ),
            id=response.get("id") or None,
        )
