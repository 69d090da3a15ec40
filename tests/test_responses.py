"""
Tests for provider response parsing and SSE reassembly.
"""

import json

import pytest

from redbox.models import Usage
from redbox.responses import (
    collect_stream,
    extract_content,
    extract_gemini_sources,
    extract_usage,
    iter_sse_data,
    parse_error_message,
)


async def _lines(*lines):
    for line in lines:
        yield line


def _frame(content=None, usage=None):
    frame = {"choices": [{"delta": {"content": content} if content is not None else {}}]}
    if usage is not None:
        frame["usage"] = usage
    return "data: " + json.dumps(frame)


# ---------------------------------------------------------------------------
# Content extraction
# ---------------------------------------------------------------------------

def test_extract_choices_shape():
    assert extract_content({"choices": [{"message": {"content": "hi"}}]}) == "hi"


def test_extract_responses_shape():
    assert extract_content({"responses": [{"message": {"content": "yo"}}]}) == "yo"


def test_extract_message_fragments_joined_with_space():
    data = {"message": {"content": [{"text": "Hello"}, {"text": "world"}]}}
    assert extract_content(data) == "Hello world"


def test_extract_first_match_wins():
    data = {
        "choices": [{"message": {"content": "first"}}],
        "responses": [{"message": {"content": "second"}}],
    }
    assert extract_content(data) == "first"


def test_extract_unknown_shape():
    assert extract_content({"output": "?"}) is None
    assert extract_content({"choices": []}) is None
    assert extract_content([]) is None


def test_gemini_sources():
    data = {"choices": [{"google_gemini_body": {"groundingMetadata": {"groundingChunks": [
        {"web": {"resolved_uri": "https://a.example"}},
        {"web": {}},
        {"web": {"resolved_uri": "https://b.example"}},
    ]}}}]}
    assert extract_gemini_sources(data) == "\n\nSource:\n1. https://a.example\n2. https://b.example"
    assert extract_gemini_sources({"choices": [{}]}) == ""


# ---------------------------------------------------------------------------
# Usage extraction
# ---------------------------------------------------------------------------

def test_extract_openai_usage():
    data = {"usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}}
    assert extract_usage(data) == Usage(10, 5, 15)


def test_extract_token_io_usage():
    data = {"usage": {"tokens": {"input_tokens": 7, "output_tokens": 3}}}
    assert extract_usage(data) == Usage(7, 3, 10)


def test_extract_usage_missing():
    assert extract_usage({}) is None
    assert extract_usage({"usage": {}}) is None


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------

def test_parse_error_message():
    body = json.dumps({"error": {"message": "model not found"}})
    assert parse_error_message(body, "application/json; charset=utf-8") == "model not found"
    assert parse_error_message(json.dumps({"error": "plain"}), "application/json") == "plain"
    assert parse_error_message(json.dumps({"detail": 1}), "application/json") == "Unknown API error"
    assert parse_error_message(body, "text/html") is None
    assert parse_error_message("not json", "application/json") is None


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_iter_sse_data_stops_at_done():
    payloads = [p async for p in iter_sse_data(_lines(
        ": keep-alive", "data: one", "", "data: two", "data: [DONE]", "data: three",
    ))]
    assert payloads == ["one", "two"]


@pytest.mark.asyncio
async def test_collect_stream_reassembles_text():
    chunks = []
    text, usage = await collect_stream(
        _lines(_frame("Hi"), _frame("!"), "data: [DONE]"),
        chunks.append,
    )
    assert text == "Hi!"
    assert chunks == ["Hi", "!"]
    assert usage == {}


@pytest.mark.asyncio
async def test_collect_stream_skips_bad_frames_and_keeps_usage():
    chunks = []
    usage_block = {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
    text, usage = await collect_stream(
        _lines(
            _frame("a"),
            "data: {broken",
            "data: [1, 2]",
            _frame(),
            'data: {"choices": []}',
            _frame("b", usage=usage_block),
            "data: [DONE]",
        ),
        chunks.append,
    )
    assert text == "ab"
    assert chunks == ["a", "b"]
    assert usage == {"usage": usage_block}


@pytest.mark.asyncio
async def test_collect_stream_skips_frames_with_odd_choice_shapes():
    chunks = []
    text, _ = await collect_stream(
        _lines(
            'data: {"choices": ["oops"]}',
            'data: {"choices": [{"delta": "nope"}]}',
            'data: {"choices": {"delta": {"content": "x"}}}',
            'data: {"choices": [{"finish_reason": null}]}',
            'data: {"choices": [{"delta": {"content": 5}}]}',
            _frame("Hi"),
            "data: [DONE]",
        ),
        chunks.append,
    )
    assert text == "Hi"
    assert chunks == ["Hi"]
