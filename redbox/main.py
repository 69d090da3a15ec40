"""
FastAPI application — the RedBox entry point.

Exposes the chat engine over HTTP:
  - POST /v1/ask                       completion (JSON, or SSE when stream=true)
  - POST /v1/conversations/{id}/reset  archive and clear a conversation
  - DELETE /v1/conversations/{id}/messages?count=N
  - GET  /v1/conversations/{id}/summary
  - GET  /v1/conversations/{id}/archive
  - GET  /api/v1/costs
  - GET  /health
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import fields
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from redbox.config import get_config, setup_logging
from redbox.costs import CostTracker
from redbox.engine import ChatEngine
from redbox.errors import (
    AllCredentialsBlacklisted,
    ImageResolutionError,
    NoCredentialsAvailable,
    ProviderError,
    RedboxError,
    RetriesExhausted,
)
from redbox.executor import AskOptions

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals — initialized at startup
# ---------------------------------------------------------------------------
engine: ChatEngine | None = None
cost_tracker: CostTracker | None = None

_ASK_FIELDS = {f.name for f in fields(AskOptions)}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global engine, cost_tracker

    cfg = get_config()
    setup_logging(cfg)

    engine = ChatEngine.from_config(cfg)
    cost_tracker = CostTracker(engine.store)
    logger.info(
        "RedBox up: model=%s endpoint=%s storage=%s",
        engine.options.model,
        engine.options.endpoint,
        (cfg.get("storage", {}) or {}).get("backend", "sqlite"),
    )

    yield

    await engine.close()
    logger.info("RedBox shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="RedBox",
    description="Conversation-aware completions over OpenAI-compatible APIs.",
    version="0.4.0",
    lifespan=lifespan,
)


def error_status(exc: Exception) -> int:
    if isinstance(exc, (NoCredentialsAvailable, AllCredentialsBlacklisted)):
        return 503
    if isinstance(exc, (RetriesExhausted, ProviderError, ImageResolutionError)):
        return 502
    return 500


def error_payload(exc: Exception) -> dict:
    payload = {"error": {"type": exc.__class__.__name__, "message": str(exc)}}
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, RetriesExhausted):
        status = getattr(exc.last_error, "status_code", None)
        payload["error"]["attempts"] = exc.attempts
    if status is not None:
        payload["error"]["upstream_status"] = status
    return payload


@app.exception_handler(RedboxError)
async def redbox_error_handler(request: Request, exc: RedboxError):
    return JSONResponse(error_payload(exc), status_code=error_status(exc))


def _split_ask_body(body: dict) -> tuple[str | None, str, dict]:
    prompt = body.get("prompt")
    conversation_id = str(body.get("conversation_id") or "default")
    options = {k: v for k, v in body.items() if k in _ASK_FIELDS}
    return prompt, conversation_id, options


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def _stream_answer(prompt: str | None, conversation_id: str, options: dict):
    """Run the completion in a task and relay its chunks as SSE frames."""
    queue: asyncio.Queue = asyncio.Queue()
    usage_box: dict = {}

    def on_usage(usage, key):
        usage_box.update(usage.to_dict())

    task = asyncio.create_task(
        engine.ask_stream(queue.put_nowait, prompt, conversation_id, on_usage=on_usage, **options)
    )
    task.add_done_callback(lambda _t: queue.put_nowait(None))

    while True:
        chunk = await queue.get()
        if chunk is None:
            break
        yield _sse({"delta": chunk})

    try:
        text = task.result()
    except RedboxError as e:
        logger.error("Streaming ask for chat %s failed: %s", conversation_id, e)
        yield _sse(error_payload(e))
    except Exception as e:
        logger.exception("Streaming ask for chat %s crashed", conversation_id)
        yield _sse(error_payload(e))
    else:
        yield _sse({"done": True, "text": text, "usage": usage_box or None})
    yield "data: [DONE]\n\n"


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

@app.post("/v1/ask")
async def ask(request: Request):
    """
    Body: {"prompt": "...", "conversation_id": "...", "stream": false, ...}
    Remaining keys are per-call options (user_name, use_alt_api, image_url, ...).
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "body must be an object"}, status_code=400)

    prompt, conversation_id, options = _split_ask_body(body)
    stream = options.get("stream")
    if stream is None:
        stream = engine.options.stream
        options["stream"] = stream

    if stream:
        return StreamingResponse(
            _stream_answer(prompt, conversation_id, options),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    usage_box: dict = {}
    text = await engine.ask(
        prompt, conversation_id,
        on_usage=lambda usage, key: usage_box.update(usage.to_dict()),
        **options,
    )
    return JSONResponse({
        "conversation_id": conversation_id,
        "text": text,
        "usage": usage_box or None,
    })


# ---------------------------------------------------------------------------
# Conversation management
# ---------------------------------------------------------------------------

@app.post("/v1/conversations/{conversation_id}/reset")
async def reset_conversation(conversation_id: str):
    conversation = await engine.reset_conversation(conversation_id)
    if conversation is None:
        return JSONResponse({"error": "conversation not found"}, status_code=404)
    return JSONResponse({"conversation_id": conversation_id, "messages": 0, "ok": True})


@app.delete("/v1/conversations/{conversation_id}/messages")
async def delete_messages(conversation_id: str, count: int = 1, kind: str | None = None):
    """
    Drop the newest `count` messages, or with ?kind=vision|file|youtube the
    newest message carrying that attachment.
    """
    if kind == "vision":
        conversation = await engine.delete_last_vision_message(conversation_id)
    elif kind == "file":
        conversation = await engine.delete_last_file_message(conversation_id)
    elif kind == "youtube":
        conversation = await engine.delete_last_youtube_file_message(conversation_id)
    elif kind:
        return JSONResponse({"error": f"unknown kind: {kind}"}, status_code=400)
    else:
        conversation = await engine.delete_last_messages(conversation_id, count)
    if conversation is None:
        return JSONResponse({"error": "conversation not found"}, status_code=404)
    return JSONResponse({
        "conversation_id": conversation_id,
        "messages": len(conversation.messages),
    })


@app.get("/v1/conversations/{conversation_id}/summary")
async def conversation_summary(conversation_id: str):
    summary = await engine.get_first_and_last_message(conversation_id)
    if summary is None:
        return JSONResponse({"error": "conversation empty or not found"}, status_code=404)
    summary["vision"] = await engine.count_chats_with_vision(conversation_id)
    summary["files"] = await engine.count_chats_with_file(conversation_id)
    summary["youtube"] = await engine.count_chats_with_youtube_file(conversation_id)
    return JSONResponse(summary)


@app.get("/v1/conversations/{conversation_id}/archive")
async def conversation_archive(conversation_id: str):
    batches = await asyncio.to_thread(engine.archive.read_batches, conversation_id)
    return JSONResponse({"conversation_id": conversation_id, "batches": batches})


# ---------------------------------------------------------------------------
# Costs and health
# ---------------------------------------------------------------------------

@app.get("/api/v1/costs")
async def api_costs():
    """Per-key usage and spend, keys masked."""
    stats = await cost_tracker.get_stats()
    stats["unit_price"] = engine.options.price
    stats["alternate"] = {
        "blacklisted": len(engine.pool.registry.blacklisted),
        "tokens": sum(c.tokens for c in engine.pool.alternate_usage.values()),
    }
    return JSONResponse(stats)


@app.get("/health")
async def health():
    return JSONResponse({
        "status": "ok",
        "model": engine.options.model if engine else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
