"""Pytest configuration and fixtures."""

import json
from typing import Any

import pytest


def sse_data(payload: Any) -> bytes:
    """Encode one upstream chunk as an OpenAI-style SSE data line."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def text_chunk(text: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]}


def tool_chunk(
    index: int,
    arguments: str | None = None,
    id: str | None = None,
    name: str | None = None,
) -> dict[str, Any]:
    fragment: dict[str, Any] = {"index": index, "function": {}}
    if id is not None:
        fragment["id"] = id
        fragment["type"] = "function"
    if name is not None:
        fragment["function"]["name"] = name
    if arguments is not None:
        fragment["function"]["arguments"] = arguments
    return {"choices": [{"index": 0, "delta": {"tool_calls": [fragment]}, "finish_reason": None}]}


def finish_chunk(reason: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


def parse_sse(raw: bytes) -> list[tuple[str, dict[str, Any]]]:
    """Split an Anthropic SSE byte stream into (event, data) pairs."""
    events = []
    for record in raw.decode("utf-8").split("\n\n"):
        if not record.strip():
            continue
        lines = record.split("\n")
        assert lines[0].startswith("event: ")
        assert lines[1].startswith("data: ")
        events.append((lines[0][len("event: ") :], json.loads(lines[1][len("data: ") :])))
    return events


@pytest.fixture
def simple_request() -> dict[str, Any]:
    """Minimal valid Anthropic request."""
    return {
        "model": "claude-x",
        "max_tokens": 100,
        "stream": False,
        "messages": [{"role": "user", "content": "hi"}],
    }


@pytest.fixture
def tool_request() -> dict[str, Any]:
    """Request declaring one tool and a multi-turn tool exchange."""
    return {
        "model": "claude-x",
        "max_tokens": 1024,
        "tools": [
            {
                "name": "get_weather",
                "description": "Get weather for a location",
                "input_schema": {
                    "type": "object",
                    "properties": {"location": {"type": "string"}},
                    "required": ["location"],
                },
            }
        ],
        "messages": [
            {"role": "user", "content": "Weather in NYC?"},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Let me check."},
                    {
                        "type": "tool_use",
                        "id": "toolu_01",
                        "name": "get_weather",
                        "input": {"location": "NYC"},
                    },
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_01", "content": "72 degrees"},
                ],
            },
        ],
    }
