"""
Tests for SSE parsing in the model backend client
"""

import json

import httpx
import pytest

from infinet.services.model_client import ChatStream, parse_sse_line


def frame(content) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]})


def test_parse_sse_line():
    assert parse_sse_line(frame("Hi")) == "Hi"
    assert parse_sse_line("") is None
    assert parse_sse_line(": keep-alive") is None
    assert parse_sse_line("data: [DONE]") is None
    assert parse_sse_line(frame(None)) is None


def test_malformed_frame_is_skipped(caplog):
    assert parse_sse_line("data: {not json") is None
    assert parse_sse_line('data: {"choices": []}') is None
    assert "malformed" in caplog.text


@pytest.mark.asyncio
async def test_chat_stream_yields_deltas_until_done():
    body = "\n".join([
        frame("Hel"),
        "",
        frame("lo"),
        "data: [DONE]",
        frame("ignored"),
    ]).encode()
    response = httpx.Response(200, content=body)
    stream = ChatStream(httpx.AsyncClient(), response)

    deltas = [d async for d in stream.deltas()]
    await stream.aclose()

    assert deltas == ["Hel", "lo"]
