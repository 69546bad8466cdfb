"""Tests for StreamReencoder."""

import json

import pytest

from conftest import finish_chunk, sse_data, text_chunk, tool_chunk
from switchboard.gateway.transforms.streaming import StreamReencoder, StreamState


def _run(*chunks, model="claude-x"):
    """Feed upstream payloads through a fresh reencoder and finish it."""
    reencoder = StreamReencoder(model=model)
    events = reencoder.start()
    for chunk in chunks:
        raw = chunk if isinstance(chunk, bytes) else sse_data(chunk)
        events.extend(reencoder.feed(raw))
    events.extend(reencoder.finish())
    return reencoder, events


def _summary(events):
    """Compact (type, index) view of an event sequence."""
    return [(e.type, e.index) for e in events]


async def _aiter(items):
    for item in items:
        yield item


class TestStreamLifecycle:
    """Tests for the overall event sequence."""

    def test_text_stream(self):
        """Two text deltas then stop produce the canonical sequence."""
        _, events = _run(text_chunk("Hello"), text_chunk(" world"), finish_chunk("stop"))

        assert _summary(events) == [
            ("message_start", None),
            ("content_block_start", 0),
            ("ping", None),
            ("content_block_delta", 0),
            ("content_block_delta", 0),
            ("content_block_stop", 0),
            ("message_delta", None),
            ("message_stop", None),
        ]
        assert events[1].data["content_block"] == {"type": "text", "text": ""}
        assert events[3].data["delta"] == {"type": "text_delta", "text": "Hello"}
        assert events[4].data["delta"] == {"type": "text_delta", "text": " world"}
        assert events[6].data["delta"]["stop_reason"] == "end_turn"

    def test_message_start_uses_state_id_and_model(self):
        """message_start carries the per-request id and the caller's model."""
        state = StreamState(message_id="msg_test")
        reencoder = StreamReencoder(model="claude-x", state=state)

        events = reencoder.start()

        assert events[0].data["message"]["id"] == "msg_test"
        assert events[0].data["message"]["model"] == "claude-x"
        assert reencoder.start() == []

    def test_done_sentinel_and_comments_ignored(self):
        """[DONE], comments and non-data fields produce nothing."""
        _, events = _run(
            b": keep-alive\n\n",
            b"event: chunk\nid: 7\n",
            text_chunk("x"),
            finish_chunk("length"),
            b"data: [DONE]\n\n",
        )

        assert [e.type for e in events].count("content_block_delta") == 1
        assert events[-2].data["delta"]["stop_reason"] == "max_tokens"

    def test_data_prefix_without_space(self):
        """``data:{...}`` is accepted as well as ``data: {...}``."""
        payload = json.dumps(text_chunk("tight")).encode()
        _, events = _run(b"data:" + payload + b"\n", finish_chunk("stop"))

        assert events[3].data["delta"]["text"] == "tight"

    def test_crlf_lines(self):
        """Lines terminated with CRLF parse normally."""
        payload = json.dumps(text_chunk("crlf")).encode()
        _, events = _run(b"data: " + payload + b"\r\n\r\n", finish_chunk("stop"))

        assert events[3].data["delta"]["text"] == "crlf"

    def test_empty_content_not_emitted(self):
        """Empty content deltas (e.g. the role chunk) emit nothing."""
        role_chunk = {"choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}}]}
        _, events = _run(role_chunk, finish_chunk("stop"))

        assert "content_block_delta" not in [e.type for e in events]

    def test_events_after_finish_ignored(self):
        """Nothing is emitted once the message is complete."""
        reencoder, events = _run(finish_chunk("stop"), text_chunk("late"))

        assert events[-1].type == "message_stop"
        assert "content_block_delta" not in [e.type for e in events]
        assert reencoder.process_chunk(text_chunk("later")) == []


class TestToolCalls:
    """Tests for tool-call fragment handling."""

    def test_fragmented_arguments(self):
        """Argument fragments are forwarded verbatim on block 1."""
        reencoder, events = _run(
            tool_chunk(0, id="call_1", name="calc"),
            tool_chunk(0, arguments='{"a":1'),
            tool_chunk(0, arguments="}"),
            finish_chunk("tool_calls"),
        )

        starts = [e for e in events if e.type == "content_block_start"]
        assert [e.index for e in starts] == [0, 1]
        assert starts[1].data["content_block"] == {
            "type": "tool_use",
            "id": "call_1",
            "name": "calc",
            "input": {},
        }

        deltas = [e.data["delta"] for e in events if e.type == "content_block_delta"]
        assert deltas == [
            {"type": "input_json_delta", "partial_json": '{"a":1'},
            {"type": "input_json_delta", "partial_json": "}"},
        ]
        assert json.loads("".join(d["partial_json"] for d in deltas)) == {"a": 1}
        assert reencoder.state.tool_calls[0].arguments == '{"a":1}'

        message_delta = next(e for e in events if e.type == "message_delta")
        assert message_delta.data["delta"]["stop_reason"] == "tool_use"

    def test_text_closed_before_tool(self):
        """The text block is stopped once, before the first tool block opens."""
        _, events = _run(
            text_chunk("Let me check."),
            tool_chunk(0, id="call_1", name="get_weather", arguments="{}"),
            finish_chunk("tool_calls"),
        )

        assert _summary(events)[3:] == [
            ("content_block_delta", 0),
            ("content_block_stop", 0),
            ("content_block_start", 1),
            ("content_block_delta", 1),
            ("content_block_stop", 1),
            ("message_delta", None),
            ("message_stop", None),
        ]

    def test_text_after_tool_call(self):
        """Text arriving after a tool call is still emitted on index 0, without reopening it."""
        _, events = _run(
            tool_chunk(0, id="call_1", name="calc", arguments="{}"),
            text_chunk("more"),
            finish_chunk("tool_calls"),
        )

        assert [e.index for e in events if e.type == "content_block_stop"] == [0, 1]
        assert [e.index for e in events if e.type == "content_block_start"] == [0, 1]
        deltas = [e for e in events if e.type == "content_block_delta"]
        assert [(e.index, e.data["delta"]["type"]) for e in deltas] == [
            (1, "input_json_delta"),
            (0, "text_delta"),
        ]
        assert deltas[1].data["delta"]["text"] == "more"

    def test_multiple_tools_in_order_of_appearance(self):
        """Tool blocks get consecutive indices by first appearance."""
        _, events = _run(
            tool_chunk(3, id="call_b", name="second"),
            tool_chunk(1, id="call_a", name="first"),
            tool_chunk(3, arguments='{"x":1}'),
            tool_chunk(1, arguments='{"y":2}'),
            finish_chunk("tool_calls"),
        )

        starts = [e for e in events if e.type == "content_block_start"][1:]
        assert [(e.index, e.data["content_block"]["id"]) for e in starts] == [
            (1, "call_b"),
            (2, "call_a"),
        ]
        deltas = [e for e in events if e.type == "content_block_delta"]
        assert [(e.index, e.data["delta"]["partial_json"]) for e in deltas] == [
            (1, '{"x":1}'),
            (2, '{"y":2}'),
        ]
        stops = [e.index for e in events if e.type == "content_block_stop"]
        assert stops == [0, 1, 2]

    def test_missing_index_defaults_to_zero(self):
        """A fragment without an index is treated as tool call 0."""
        chunk = {
            "choices": [
                {"delta": {"tool_calls": [{"id": "call_z", "function": {"name": "f"}}]}}
            ]
        }
        reencoder, _ = _run(chunk, finish_chunk("tool_calls"))

        assert list(reencoder.state.tool_calls) == [0]
        assert reencoder.state.tool_calls[0].block_index == 1

    def test_missing_id_synthesized(self):
        """Tool calls without an upstream id get a generated one."""
        _, events = _run(tool_chunk(0, name="calc", arguments="{}"), finish_chunk("tool_calls"))

        start = [e for e in events if e.type == "content_block_start"][1]
        assert start.data["content_block"]["id"].startswith("toolu_")
        assert start.data["content_block"]["id"].endswith("_0")

    def test_late_name_recorded(self):
        """A name arriving after the first fragment is kept in state."""
        reencoder, _ = _run(
            tool_chunk(0, id="call_1"),
            tool_chunk(0, name="late_name", arguments="{}"),
            finish_chunk("tool_calls"),
        )

        assert reencoder.state.tool_calls[0].name == "late_name"


class TestRobustness:
    """Tests for malformed input, usage and end-of-stream handling."""

    def test_malformed_line_skipped(self, caplog):
        """An unparseable line is logged and the stream continues."""
        _, events = _run(b"data: {not json\n\n", text_chunk("ok"), finish_chunk("stop"))

        deltas = [e for e in events if e.type == "content_block_delta"]
        assert [d.data["delta"]["text"] for d in deltas] == ["ok"]
        assert events[-1].type == "message_stop"
        assert "Error parsing SSE chunk" in caplog.text

    def test_non_object_chunk_skipped(self):
        """JSON that is not an object is ignored."""
        _, events = _run(b"data: [1, 2]\n\n", b"data: null\n\n", finish_chunk("stop"))

        assert events[-1].type == "message_stop"

    @pytest.mark.parametrize(
        "fragment",
        [
            {"index": 0, "function": "oops"},
            {"index": [0], "function": {"name": "f"}},
            {"index": "0", "function": {"name": "f"}},
            "not a fragment",
        ],
    )
    def test_malformed_tool_fragment_skipped(self, fragment, caplog):
        """A badly shaped tool call fragment is logged and the stream goes on."""
        bad = {"choices": [{"delta": {"tool_calls": [fragment]}}]}
        reencoder, events = _run(bad, text_chunk("hi"), finish_chunk("stop"))

        assert _summary(events) == [
            ("message_start", None),
            ("content_block_start", 0),
            ("ping", None),
            ("content_block_delta", 0),
            ("content_block_stop", 0),
            ("message_delta", None),
            ("message_stop", None),
        ]
        assert events[3].data["delta"]["text"] == "hi"
        assert reencoder.state.tool_calls == {}
        assert "Skipping malformed tool call fragment" in caplog.text

    def test_malformed_fragment_beside_valid_one(self):
        """Only the badly shaped fragment of a chunk is dropped."""
        chunk = {
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {"index": 0, "function": 42},
                            {"index": 1, "id": "call_ok", "function": {"name": "f"}},
                        ]
                    }
                }
            ]
        }
        reencoder, events = _run(chunk, finish_chunk("tool_calls"))

        assert list(reencoder.state.tool_calls) == [1]
        assert reencoder.state.tool_calls[1].block_index == 1
        assert events[-1].type == "message_stop"

    def test_malformed_delta_values_skipped(self, caplog):
        """Odd value types inside a chunk never end the stream."""
        _, events = _run(
            {"choices": [{"delta": {"content": 5, "tool_calls": "x"}, "finish_reason": None}]},
            {"choices": ["nope"], "usage": {"completion_tokens": "many"}},
            text_chunk("ok"),
            finish_chunk("stop"),
        )

        assert [e.data["delta"]["text"] for e in events if e.type == "content_block_delta"] == [
            "ok"
        ]
        assert events[-2].data["usage"]["output_tokens"] == 0
        assert events[-1].type == "message_stop"

    def test_chunk_without_choices_skipped(self):
        """Chunks with an empty choices array carry no deltas."""
        _, events = _run({"choices": []}, text_chunk("a"), finish_chunk("stop"))

        assert len([e for e in events if e.type == "content_block_delta"]) == 1

    def test_line_split_across_chunks(self):
        """A data line split over two reads is reassembled."""
        raw = sse_data(text_chunk("split"))
        _, events = _run(raw[:10], raw[10:], finish_chunk("stop"))

        assert events[3].data["delta"]["text"] == "split"

    def test_multibyte_character_split_across_chunks(self):
        """A UTF-8 sequence split between reads decodes intact."""
        raw = sse_data(text_chunk("héllo"))
        cut = raw.index("é".encode()) + 1
        _, events = _run(raw[:cut], raw[cut:], finish_chunk("stop"))

        assert events[3].data["delta"]["text"] == "héllo"

    def test_usage_reported_in_message_delta(self):
        """Completion tokens from usage chunks reach message_delta."""
        usage_chunk = {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 7}}
        reencoder, events = _run(text_chunk("a"), usage_chunk, finish_chunk("stop"))

        message_delta = next(e for e in events if e.type == "message_delta")
        assert message_delta.data["usage"] == {"output_tokens": 7}
        assert reencoder.state.input_tokens == 12

    def test_usage_is_sticky(self):
        """A later zero counter does not erase a known value."""
        first = {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 7}}
        zeros = {"choices": [], "usage": {"prompt_tokens": 0, "completion_tokens": 0}}
        reencoder, _ = _run(first, zeros, finish_chunk("stop"))

        assert reencoder.state.input_tokens == 12
        assert reencoder.state.output_tokens == 7

    def test_unknown_finish_reason(self):
        """Unmapped finish reasons close with end_turn."""
        _, events = _run(finish_chunk("content_filter"))

        assert events[-2].data["delta"]["stop_reason"] == "end_turn"

    def test_eof_without_finish_reason(self, caplog):
        """Upstream closing early still completes the message."""
        reencoder, events = _run(text_chunk("partial"))

        assert _summary(events)[-3:] == [
            ("content_block_stop", 0),
            ("message_delta", None),
            ("message_stop", None),
        ]
        assert reencoder.state.stop_reason == "end_turn"
        assert "without finish_reason" in caplog.text

    def test_eof_closes_open_tool_blocks(self):
        """Tool blocks still open at EOF are stopped."""
        _, events = _run(tool_chunk(0, id="call_1", name="calc", arguments='{"a":'))

        assert [e.index for e in events if e.type == "content_block_stop"] == [0, 1]
        assert events[-1].type == "message_stop"

    def test_trailing_line_without_newline(self):
        """A final data line lacking a newline is processed at EOF."""
        payload = json.dumps(finish_chunk("length")).encode()
        _, events = _run(b"data: " + payload)

        assert events[-2].data["delta"]["stop_reason"] == "max_tokens"


class TestReencode:
    """Tests for the async driver."""

    async def test_reencode_async_source(self):
        """reencode() wraps the full lifecycle over an async byte source."""
        reencoder = StreamReencoder(model="claude-x")
        source = _aiter([sse_data(text_chunk("Hi")), sse_data(finish_chunk("stop"))])

        events = [event async for event in reencoder.reencode(source)]

        assert [e.type for e in events] == [
            "message_start",
            "content_block_start",
            "ping",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]

    async def test_reencode_stops_reading_after_finish(self):
        """The source is not consumed past the finishing chunk."""
        consumed = []

        async def source():
            for raw in (sse_data(finish_chunk("stop")), sse_data(text_chunk("extra"))):
                consumed.append(raw)
                yield raw

        reencoder = StreamReencoder(model="claude-x")
        events = [event async for event in reencoder.reencode(source())]

        assert len(consumed) == 1
        assert events[-1].type == "message_stop"

    async def test_source_error_propagates_without_message_stop(self):
        """A failing source raises after the events already produced."""

        async def source():
            yield sse_data(text_chunk("partial"))
            raise ConnectionResetError("upstream went away")

        reencoder = StreamReencoder(model="claude-x")
        events = []
        with pytest.raises(ConnectionResetError):
            async for event in reencoder.reencode(source()):
                events.append(event)

        assert [e.type for e in events][-1] == "content_block_delta"
        assert reencoder.state.finished is False
