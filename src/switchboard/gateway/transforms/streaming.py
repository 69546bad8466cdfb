"""Re-encoding of OpenAI streaming chunks into Anthropic SSE events.

The upstream sends ``data: {...}`` lines, each a chat.completion.chunk whose
first choice carries a delta (text and/or tool-call fragments) and, at the
end, a finish_reason. The caller expects named Anthropic events:

    message_start
    content_block_start (index 0, text)
    ping
    content_block_delta / content_block_start / content_block_stop ...
    message_delta
    message_stop

The text block is always index 0. Tool blocks take indices 1, 2, 3, ... in
order of first appearance of the upstream tool-call index. Once a tool call
has been seen the text block is closed and never reopened; later text
deltas still target index 0.

All state lives in a StreamState created per request, so a reencoder can be
driven line by line in tests without any transport.
"""

from __future__ import annotations

import codecs
import json
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from . import anthropic
from .types import OutputEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

TEXT_BLOCK_INDEX = 0


@dataclass
class ToolCallState:
    """Accumulated state for one upstream tool call."""

    block_index: int
    id: str
    name: str
    arguments: str = ""


@dataclass
class StreamState:
    """Per-request mutable state of the stream state machine."""

    message_id: str = field(default_factory=anthropic.generate_message_id)
    input_tokens: int = 0
    output_tokens: int = 0
    text_block_open: bool = False
    # Upstream tool-call index -> state, in order of first appearance
    tool_calls: dict[int, ToolCallState] = field(default_factory=dict)
    started: bool = False
    finished: bool = False
    stop_reason: str | None = None

    @property
    def next_block_index(self) -> int:
        return len(self.tool_calls) + 1


class StreamReencoder:
    """Consumes upstream SSE bytes and produces Anthropic OutputEvents.

    Example:
        >>> reencoder = StreamReencoder(model="claude-x")
        >>> async for event in reencoder.reencode(response.content.iter_any()):
        ...     await out.write(event.to_sse())
    """

    def __init__(
        self,
        model: str,
        state: StreamState | None = None,
        trace_id: str | None = None,
    ):
        self.model = model
        self.state = state or StreamState()
        self.trace_id = trace_id or self.state.message_id
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> list[OutputEvent]:
        """Open the message and the implicit text block."""
        if self.state.started:
            return []
        self.state.started = True
        self.state.text_block_open = True
        return [
            anthropic.message_start(self.state.message_id, self.model),
            anthropic.text_block_start(TEXT_BLOCK_INDEX),
            anthropic.ping(),
        ]

    def feed(self, data: bytes) -> list[OutputEvent]:
        """Buffer raw bytes and process every complete line."""
        self._buffer += self._decoder.decode(data)
        events: list[OutputEvent] = []
        while not self.state.finished:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            events.extend(self.process_line(line))
        return events

    def finish(self) -> list[OutputEvent]:
        """Upstream closed the connection.

        Processes any trailing line left without a newline, then closes the
        message with ``end_turn`` if no finish_reason was ever received.
        """
        events: list[OutputEvent] = []
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer and not self.state.finished:
            line, self._buffer = self._buffer, ""
            events.extend(self.process_line(line))

        if self.state.finished:
            return events

        logger.warning(
            "[%s] Upstream stream ended without finish_reason, closing with end_turn",
            self.trace_id,
        )
        events.extend(self._complete("end_turn"))
        return events

    async def reencode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[OutputEvent]:
        """Drive the state machine over an async byte source.

        Exceptions raised by the source propagate to the consumer after the
        events already produced; no message_stop is fabricated for them.
        """
        for event in self.start():
            yield event

        async for data in chunks:
            for event in self.feed(data):
                yield event
            if self.state.finished:
                return

        for event in self.finish():
            yield event

    # ------------------------------------------------------------------
    # Line processing
    # ------------------------------------------------------------------

    def process_line(self, line: str) -> list[OutputEvent]:
        """Process one SSE line from the upstream."""
        if self.state.finished:
            return []

        line = line.rstrip("\r")
        if not line.strip() or line.startswith(":"):
            return []
        if not line.startswith(DATA_PREFIX):
            # event:, id:, retry: fields carry nothing we translate
            return []

        data_str = line[len(DATA_PREFIX) :]
        if data_str.startswith(" "):
            data_str = data_str[1:]
        if data_str.strip() == DONE_SENTINEL:
            return []

        try:
            chunk = json.loads(data_str)
        except json.JSONDecodeError as e:
            logger.error("[%s] Error parsing SSE chunk: %s (%r)", self.trace_id, e, data_str[:200])
            return []

        if not isinstance(chunk, dict):
            logger.debug("[%s] Skipping non-object SSE chunk", self.trace_id)
            return []

        return self.process_chunk(chunk)

    def process_chunk(self, chunk: dict[str, Any]) -> list[OutputEvent]:
        """Process one parsed chat.completion.chunk.

        A chunk with an unexpected shape is logged and skipped; it never
        ends the stream.
        """
        if self.state.finished:
            return []

        try:
            return self._process_chunk(chunk)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error("[%s] Skipping malformed SSE chunk: %s (%r)", self.trace_id, e, chunk)
            return []

    def _process_chunk(self, chunk: dict[str, Any]) -> list[OutputEvent]:
        self._update_usage(chunk.get("usage"))

        choices = chunk.get("choices")
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            return []
        choice = choices[0]

        events: list[OutputEvent] = []
        delta = choice.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                # Block 0 may already be stopped after a tool call; the text still goes out
                events.append(anthropic.text_delta(TEXT_BLOCK_INDEX, content))

            tool_calls = delta.get("tool_calls")
            if tool_calls and isinstance(tool_calls, list):
                fragments = [f for f in tool_calls if self._is_valid_fragment(f)]
                if fragments:
                    events.extend(self._close_text_block())
                for fragment in fragments:
                    events.extend(self._process_tool_fragment(fragment))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            events.extend(self._complete(anthropic.map_finish_reason(finish_reason)))

        return events

    def _update_usage(self, usage: Any) -> None:
        # Sticky: a zero or missing counter never erases a known value
        if not isinstance(usage, dict):
            return
        prompt_tokens = usage.get("prompt_tokens")
        if isinstance(prompt_tokens, int) and prompt_tokens:
            self.state.input_tokens = prompt_tokens
        completion_tokens = usage.get("completion_tokens")
        if isinstance(completion_tokens, int) and completion_tokens:
            self.state.output_tokens = completion_tokens

    def _is_valid_fragment(self, fragment: Any) -> bool:
        if (
            isinstance(fragment, dict)
            and isinstance(fragment.get("index", 0) or 0, int)
            and isinstance(fragment.get("function") or {}, dict)
        ):
            return True
        logger.error("[%s] Skipping malformed tool call fragment: %r", self.trace_id, fragment)
        return False

    def _process_tool_fragment(self, fragment: dict[str, Any]) -> list[OutputEvent]:
        events: list[OutputEvent] = []
        tc_index = fragment.get("index") or 0
        function = fragment.get("function") or {}
        name = function.get("name")
        if not isinstance(name, str):
            name = ""

        tool = self.state.tool_calls.get(tc_index)
        if tool is None:
            tool_id = fragment.get("id")
            tool = ToolCallState(
                block_index=self.state.next_block_index,
                id=tool_id
                if isinstance(tool_id, str) and tool_id
                else f"toolu_{int(time.time() * 1000)}_{tc_index}",
                name=name,
            )
            self.state.tool_calls[tc_index] = tool
            logger.debug(
                "[%s] Tool call %s (%s) -> block %d",
                self.trace_id,
                tool.name,
                tool.id,
                tool.block_index,
            )
            events.append(anthropic.tool_block_start(tool.block_index, tool.id, tool.name))
        elif name and not tool.name:
            tool.name = name

        arguments = function.get("arguments")
        if isinstance(arguments, str) and arguments:
            tool.arguments += arguments
            events.append(anthropic.input_json_delta(tool.block_index, arguments))

        return events

    def _close_text_block(self) -> list[OutputEvent]:
        if not self.state.text_block_open:
            return []
        self.state.text_block_open = False
        return [anthropic.block_stop(TEXT_BLOCK_INDEX)]

    def _complete(self, stop_reason: str) -> list[OutputEvent]:
        events = self._close_text_block()
        for tool in sorted(self.state.tool_calls.values(), key=lambda t: t.block_index):
            events.append(anthropic.block_stop(tool.block_index))
        events.append(anthropic.message_delta(stop_reason, self.state.output_tokens))
        events.append(anthropic.message_stop())

        self.state.finished = True
        self.state.stop_reason = stop_reason
        logger.info(
            "[%s] Stream complete: stop_reason=%s, input_tokens=%d, output_tokens=%d, "
            "tool_calls=%d",
            self.trace_id,
            stop_reason,
            self.state.input_tokens,
            self.state.output_tokens,
            len(self.state.tool_calls),
        )
        return events
