"""
Tests for the completion executor: routing, retries, backoff, blacklisting,
streaming and moderation. HTTP goes through httpx.MockTransport.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from redbox.archive import ArchiveStore
from redbox.config import EngineOptions
from redbox.context import ContextBuilder
from redbox.credentials import CredentialPool, CredentialRegistry
from redbox.errors import (
    FatalProviderError,
    NoCredentialsAvailable,
    RetriesExhausted,
    TransientProviderError,
    UnexpectedResponseShape,
)
from redbox.executor import (
    EMPTY_RESPONSE_PLACEHOLDER,
    MAX_RETRIES,
    REJECTION_MESSAGE,
    AskOptions,
    CompletionExecutor,
    backoff_seconds,
)
from redbox.models import Conversation, Message, MessageType
from redbox.storage import JSONFileStore
from redbox.tokens import estimate_tokens

PRIMARY = "sk-primary-000000001"
ALT_1 = "alt-key-0000000000001"
ALT_2 = "alt-key-0000000000002"
ALT_URL = "https://alt.example/v1/chat/completions"


def ok(content="Hello!", usage=None):
    body = {"choices": [{"message": {"content": content}}]}
    if usage is not None:
        body["usage"] = usage
    return httpx.Response(200, json=body)


def status(code, body=None):
    if body is None:
        return httpx.Response(code, text="upstream trouble")
    return httpx.Response(code, json=body)


def sse(*chunks):
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]}) for c in chunks
    ]
    lines.append("data: [DONE]")
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=("\n\n".join(lines) + "\n\n").encode(),
    )


class Upstream:
    """Scripted provider: returns the queued responses in order, records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def bodies(self):
        return [json.loads(r.content) for r in self.requests]


async def make_executor(tmp_path, upstream, options=None, keys=(PRIMARY,), moderator=None, registry=None):
    store = JSONFileStore(str(tmp_path / "db.json"))
    pool = CredentialPool(store, registry or CredentialRegistry())
    await pool.register(list(keys))
    options = options or EngineOptions(instructions="Be brief.")
    builder = ContextBuilder(
        ArchiveStore(str(tmp_path / "archives")),
        estimate_tokens,
        instructions=options.instructions,
        max_conversation_tokens=options.max_conversation_tokens,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return CompletionExecutor(
        options, store, pool, builder, estimate_tokens, moderator=moderator, client=client,
    )


def test_backoff_schedule():
    assert [backoff_seconds(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_success_persists_exchange_and_usage(tmp_path):
    upstream = Upstream(ok("Hello!", usage={
        "prompt_tokens": 20, "completion_tokens": 3, "total_tokens": 23,
    }))
    ex = await make_executor(tmp_path, upstream)
    seen = []

    text = await ex.run("hi", "c1", AskOptions(user_name="ana"), on_usage=lambda u, k: seen.append((u, k)))

    assert text == "Hello!"
    conv = await ex.store.get_conversation("c1")
    assert [m.type for m in conv.messages] == [MessageType.USER, MessageType.ASSISTANT]
    assert conv.messages[1].usage["total_tokens"] == 23
    assert conv.user_name == "ana"
    assert seen[0][0].total_tokens == 23
    assert seen[0][1] == PRIMARY

    cred = await ex.store.get_credential(PRIMARY)
    assert cred.queries == 1
    assert cred.tokens == 23


@pytest.mark.asyncio
async def test_request_shape(tmp_path):
    upstream = Upstream(ok())
    options = EngineOptions(instructions="Be brief.", model="gpt-4o", temperature=0.2)
    ex = await make_executor(tmp_path, upstream, options=options)

    await ex.run("hi", "c1", AskOptions(additional_parameters={"seed": 7}))

    request = upstream.requests[0]
    assert str(request.url) == options.endpoint
    assert request.headers["Authorization"] == f"Bearer {PRIMARY}"
    body = upstream.bodies()[0]
    assert body["model"] == "gpt-4o"
    assert body["temperature"] == 0.2
    assert body["seed"] == 7
    assert body["stream"] is False
    assert "max_tokens" not in body
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][-1] == {"role": "user", "content": "hi"}


@pytest.mark.asyncio
async def test_xapi_header(tmp_path):
    upstream = Upstream(ok())
    ex = await make_executor(tmp_path, upstream)
    await ex.run("hi", "c1", AskOptions(xapi=True))
    assert upstream.requests[0].headers["x-api-key"] == PRIMARY
    assert "Authorization" not in upstream.requests[0].headers


@pytest.mark.asyncio
async def test_usage_estimated_when_missing(tmp_path):
    upstream = Upstream(ok("x" * 40))
    ex = await make_executor(tmp_path, upstream)
    seen = []
    await ex.run("hi", "c1", on_usage=lambda u, k: seen.append(u))
    assert seen[0].completion_tokens == 10
    assert seen[0].total_tokens == seen[0].prompt_tokens + 10


@pytest.mark.asyncio
async def test_gemini_sources_appended(tmp_path):
    body = {"choices": [{
        "message": {"content": "Answer"},
        "google_gemini_body": {"groundingMetadata": {"groundingChunks": [
            {"web": {"resolved_uri": "https://src.example"}},
        ]}},
    }]}
    ex = await make_executor(tmp_path, Upstream(httpx.Response(200, json=body)))
    assert await ex.run("q", "c1") == "Answer\n\nSource:\n1. https://src.example"


@pytest.mark.asyncio
async def test_no_primary_keys(tmp_path):
    ex = await make_executor(tmp_path, Upstream(ok()), keys=())
    with pytest.raises(NoCredentialsAvailable):
        await ex.run("hi", "c1")


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transient_errors_retried_with_backoff(tmp_path):
    upstream = Upstream(status(503), status(503), status(503), ok("finally"))
    options = EngineOptions(instructions="Be brief.", alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
        text = await ex.run("hi", "c1")

    assert text == "finally"
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]
    assert len(upstream.requests) == 4
    # The prompt is stored once, not once per attempt
    conv = await ex.store.get_conversation("c1")
    assert [m.content for m in conv.messages] == ["hi", "finally"]


@pytest.mark.asyncio
async def test_transient_error_fatal_without_alternate_pool(tmp_path):
    upstream = Upstream(status(503))
    ex = await make_executor(tmp_path, upstream)

    with pytest.raises(FatalProviderError) as exc_info:
        await ex.run("hi", "c1")

    assert exc_info.value.status_code == 503
    assert str(exc_info.value) == "Request failed with status code 503"
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_retries_exhausted(tmp_path):
    upstream = Upstream(status(500))
    options = EngineOptions(instructions="Be brief.", alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(RetriesExhausted) as exc_info:
            await ex.run("hi", "c1")

    assert len(upstream.requests) == MAX_RETRIES + 1
    assert exc_info.value.attempts == MAX_RETRIES + 1
    assert isinstance(exc_info.value.last_error, TransientProviderError)
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 8.0, 10.0]
    # Nothing persisted for a failed call
    conv = await ex.store.get_conversation("c1")
    assert conv.messages == []


@pytest.mark.asyncio
async def test_rate_limit_on_alternate_route_blacklists_and_rotates(tmp_path):
    upstream = Upstream(status(429), ok("from key two"))
    registry = CredentialRegistry()
    options = EngineOptions(
        instructions="Be brief.",
        alt_endpoint=ALT_URL,
        alt_api_keys=[ALT_1, ALT_2],
        key_selection="sequential",
        disposable_keys=True,
    )
    ex = await make_executor(tmp_path, upstream, options=options, registry=registry)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
        text = await ex.run("hi", "c1", AskOptions(use_alt_api=True))

    assert text == "from key two"
    assert registry.is_blacklisted(ALT_1)
    assert not registry.is_blacklisted(ALT_2)
    sleep.assert_not_awaited()
    assert [str(r.url) for r in upstream.requests] == [ALT_URL, ALT_URL]
    assert [r.headers["Authorization"] for r in upstream.requests] == [
        f"Bearer {ALT_1}", f"Bearer {ALT_2}",
    ]
    # Alternate keys are not charged to the primary pool
    assert (await ex.store.get_credential(PRIMARY)).queries == 0
    assert ex.pool.alternate_usage[ALT_2].queries == 1


@pytest.mark.asyncio
async def test_rate_limit_without_disposable_keys_keeps_key(tmp_path):
    upstream = Upstream(status(429), ok())
    registry = CredentialRegistry()
    options = EngineOptions(instructions="Be brief.", alt_endpoint=ALT_URL, alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options, registry=registry)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock):
        await ex.run("hi", "c1", AskOptions(use_alt_api=True))

    assert registry.blacklisted == frozenset()
    assert len(upstream.requests) == 2


@pytest.mark.asyncio
async def test_rate_limit_on_primary_route_is_fatal(tmp_path):
    upstream = Upstream(status(429, {"error": {"message": "slow down"}}))
    options = EngineOptions(instructions="Be brief.", alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options)

    with pytest.raises(FatalProviderError, match="slow down") as exc_info:
        await ex.run("hi", "c1")
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_error_body_message_is_surfaced(tmp_path):
    upstream = Upstream(status(400, {"error": {"message": "model does not exist"}}))
    options = EngineOptions(instructions="Be brief.", alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options)

    with pytest.raises(FatalProviderError, match="model does not exist"):
        await ex.run("hi", "c1")
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_error_inside_success_body(tmp_path):
    upstream = Upstream(httpx.Response(200, json={"status": 500, "error": "upstream exploded"}))
    ex = await make_executor(tmp_path, upstream)
    with pytest.raises(FatalProviderError, match="upstream exploded"):
        await ex.run("hi", "c1")


@pytest.mark.asyncio
async def test_unknown_shape_fatal_without_alternate_pool(tmp_path):
    ex = await make_executor(tmp_path, Upstream(httpx.Response(200, json={"weird": True})))
    with pytest.raises(UnexpectedResponseShape):
        await ex.run("hi", "c1")


@pytest.mark.asyncio
async def test_unknown_shape_retried_with_alternate_pool(tmp_path):
    upstream = Upstream(httpx.Response(200, json={"weird": True}), ok("ok now"))
    options = EngineOptions(instructions="Be brief.", alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
        assert await ex.run("hi", "c1") == "ok now"
    assert [c.args[0] for c in sleep.await_args_list] == [1.0]


@pytest.mark.asyncio
async def test_transport_error_is_fatal(tmp_path):
    ex = await make_executor(tmp_path, Upstream(httpx.ConnectError("connection refused")))
    with pytest.raises(FatalProviderError, match="connection refused"):
        await ex.run("hi", "c1")


@pytest.mark.asyncio
async def test_retry_counter_shared_across_failure_kinds(tmp_path):
    upstream = Upstream(status(429), status(503), ok("landed"))
    options = EngineOptions(
        instructions="Be brief.",
        alt_endpoint=ALT_URL,
        alt_api_keys=[ALT_1, ALT_2],
        key_selection="sequential",
    )
    ex = await make_executor(tmp_path, upstream, options=options)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
        text = await ex.run("hi", "c1", AskOptions(use_alt_api=True))

    assert text == "landed"
    assert len(upstream.requests) == 3
    # The 429 used retry 1 without waiting, so the 503 backs off as retry 2
    assert [c.args[0] for c in sleep.await_args_list] == [2.0]


# ---------------------------------------------------------------------------
# Archival across retries
# ---------------------------------------------------------------------------

async def _seed_for_one_eviction(ex, cid="c1"):
    conv = Conversation(id=cid, messages=[
        Message(type=MessageType.USER, content="x" * 400),
        Message(type=MessageType.ASSISTANT, content="y" * 40),
    ])
    await ex.store.set_conversation(conv)
    instruction = ex.builder.instruction_for(AskOptions().instruction_params())
    # Room for the instruction, the short reply and the prompt, never the long message
    ex.builder.max_conversation_tokens = estimate_tokens(instruction) + 10 + 1 + 20


@pytest.mark.asyncio
async def test_eviction_archived_once_across_retries(tmp_path):
    upstream = Upstream(status(503), status(503), ok("done"))
    options = EngineOptions(instructions="Be brief.", alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options)
    await _seed_for_one_eviction(ex)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock):
        assert await ex.run("hi", "c1") == "done"

    batches = ex.builder.archive.read_batches("c1")
    assert len(batches) == 1
    entries = batches[0]["messages"]
    assert entries[0]["role"] == "system"
    assert [e["content"] for e in entries[1:]] == ["x" * 400]

    conv = await ex.store.get_conversation("c1")
    assert [m.content for m in conv.messages] == ["y" * 40, "hi", "done"]


@pytest.mark.asyncio
async def test_failed_call_archives_nothing(tmp_path):
    upstream = Upstream(status(500))
    options = EngineOptions(instructions="Be brief.", alt_api_keys=[ALT_1])
    ex = await make_executor(tmp_path, upstream, options=options)
    await _seed_for_one_eviction(ex)

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(RetriesExhausted):
            await ex.run("hi", "c1")

    assert ex.builder.archive.read_batches("c1") == []
    conv = await ex.store.get_conversation("c1")
    assert [m.content for m in conv.messages] == ["x" * 400, "y" * 40]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_streaming_forwards_chunks(tmp_path):
    upstream = Upstream(sse("Hi", "!"))
    ex = await make_executor(tmp_path, upstream)
    chunks = []

    text = await ex.run("hello", "c1", AskOptions(stream=True), on_chunk=chunks.append)

    assert text == "Hi!"
    assert chunks == ["Hi", "!"]
    assert upstream.requests[0].headers["Accept"] == "text/event-stream"
    assert upstream.bodies()[0]["stream"] is True
    conv = await ex.store.get_conversation("c1")
    assert conv.messages[-1].content == "Hi!"


@pytest.mark.asyncio
async def test_streaming_error_status(tmp_path):
    upstream = Upstream(status(401, {"error": {"message": "bad key"}}))
    ex = await make_executor(tmp_path, upstream)
    with pytest.raises(FatalProviderError, match="bad key"):
        await ex.run("hello", "c1", AskOptions(stream=True))


@pytest.mark.asyncio
async def test_empty_stream_yields_placeholder(tmp_path):
    ex = await make_executor(tmp_path, Upstream(sse()))
    text = await ex.run("hello", "c1", AskOptions(stream=True))
    assert text == EMPTY_RESPONSE_PLACEHOLDER


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_flagged_prompt_is_rejected_locally(tmp_path):
    upstream = Upstream(ok())
    moderator = AsyncMock(return_value=True)
    options = EngineOptions(instructions="Be brief.", moderation=True)
    ex = await make_executor(tmp_path, upstream, options=options, moderator=moderator)
    chunks = []

    with patch("redbox.executor.asyncio.sleep", new_callable=AsyncMock):
        text = await ex.run("something bad", "c1", on_chunk=chunks.append)

    assert text == REJECTION_MESSAGE
    assert "".join(chunks) == REJECTION_MESSAGE
    assert len(chunks) == len(REJECTION_MESSAGE)
    assert upstream.requests == []
    moderator.assert_awaited_once_with("something bad", PRIMARY)
    assert await ex.store.get_conversation("c1") is None


@pytest.mark.asyncio
async def test_clean_prompt_passes_moderation(tmp_path):
    upstream = Upstream(ok("fine"))
    moderator = AsyncMock(return_value=False)
    options = EngineOptions(instructions="Be brief.", moderation=True)
    ex = await make_executor(tmp_path, upstream, options=options, moderator=moderator)
    assert await ex.run("hello", "c1") == "fine"
    assert len(upstream.requests) == 1
